"""
Decides whether a locally held article must be refreshed.
"""
from datetime import datetime
from enum import Enum
from typing import Optional


class Staleness(Enum):
    STALE = "stale"
    FRESH = "fresh"
    # Present locally but unknown to the catalog
    SKIP = "skip"


def is_stale(local_ts: Optional[datetime], last_updated: Optional[datetime],
             force_update: bool = False) -> Staleness:
    """
    Compare the local timestamp of an article against the catalog.

    Args:
        local_ts: When the local copy was written, or None if there is none
        last_updated: The catalog's last update time, or None if the
            article is not in the catalog
        force_update: Refresh regardless of timestamps

    Returns:
        The staleness decision
    """
    if last_updated is None:
        return Staleness.SKIP
    if force_update or local_ts is None:
        return Staleness.STALE
    if local_ts < last_updated:
        return Staleness.STALE
    return Staleness.FRESH
