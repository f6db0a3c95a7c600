"""
HTTP utilities for borgersync.
"""
import asyncio
import time
import logging
from collections import defaultdict

# Configure logging
logger = logging.getLogger(__name__)

# Rate limiting configuration
RATE_LIMIT = 1  # requests per second per domain
MAX_CONCURRENT_REQUESTS = 1
REQUEST_TIMEOUT = 30  # seconds

USER_AGENT = "borgersync/0.1"


class RateLimiter:
    """
    Rate limiter to avoid overwhelming the ArticleExport endpoints.
    Backs off for domains that keep failing.
    """
    def __init__(self, requests_per_second: float = RATE_LIMIT, max_backoff: float = 60.0,
                 failure_threshold: int = 3):
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self.last_requests = defaultdict(lambda: 0.0)
        self.locks = defaultdict(asyncio.Lock)
        self.failure_counts = defaultdict(int)
        self.backoff_times = defaultdict(lambda: self.min_interval)
        self.max_backoff = max_backoff  # Maximum backoff in seconds
        self.failure_threshold = failure_threshold  # Number of failures before increasing backoff

    async def acquire(self, domain: str):
        """
        Acquire rate limit for a domain with adaptive backoff for failing domains.

        Args:
            domain: The domain to rate limit
        """
        try:
            async with self.locks[domain]:
                now = time.monotonic()
                time_passed = now - self.last_requests[domain]

                # Calculate required wait time
                wait_time = max(self.min_interval, self.backoff_times[domain]) - time_passed

                if wait_time > 0:
                    logger.debug(f"Rate limiting {domain}, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)

                self.last_requests[domain] = time.monotonic()
        except asyncio.CancelledError:
            logger.warning(f"Rate limiter acquisition for {domain} was cancelled")
            raise

    def report_success(self, domain: str):
        """
        Report a successful request to a domain.
        This will gradually reduce the backoff time for the domain.

        Args:
            domain: The domain that had a successful request
        """
        self.failure_counts[domain] = 0
        # Gradually reduce backoff time, but never below the base rate limit
        if self.backoff_times[domain] > self.min_interval:
            self.backoff_times[domain] = max(self.min_interval, self.backoff_times[domain] * 0.8)

    def report_failure(self, domain: str):
        """
        Report a failed request to a domain.
        This will increase the backoff time for the domain.

        Args:
            domain: The domain that had a failed request
        """
        self.failure_counts[domain] += 1

        # Increase backoff time after reaching threshold
        if self.failure_counts[domain] >= self.failure_threshold:
            self.backoff_times[domain] = min(self.max_backoff, max(self.backoff_times[domain], 1.0) * 2.0)
            logger.warning(
                f"Increased backoff for {domain} to {self.backoff_times[domain]:.2f}s "
                f"after {self.failure_counts[domain]} failures"
            )
