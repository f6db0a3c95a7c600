"""
Batch reconciliation of cached articles and publishing targets.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from borgersync.core.article import ArticleKey, CachedArticle
from borgersync.core.cache import CacheEntry, CacheStore
from borgersync.core.keys import parse_storage_name
from borgersync.core.results import CANCELLED_MESSAGE, ArticleSnapshot, ResultEntry, ResultLog, Status
from borgersync.core.selection import parse_selection, render_selection, should_write
from borgersync.core.staleness import Staleness, is_stale
from borgersync.core.state import FLOW_CACHE, FLOW_TARGETS, StateStore
from borgersync.core.targets import Target, TargetStore
from borgersync.errors import FetchError, MalformedKey, SelectionParseError
from borgersync.fetchers.borgerdk import ArticleFetcher
from borgersync.fetchers.catalog import CatalogIndex
from borgersync.utils.http import MAX_CONCURRENT_REQUESTS

logger = logging.getLogger(__name__)

def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


class Reconciler:
    """
    Brings cache entries and publishing targets up to date with the catalog.

    The catalog must be complete before a run starts and is only read during
    it. Items are processed independently: an error on one item becomes a
    failed entry in the result log and never stops the batch.
    """
    def __init__(self, catalog: CatalogIndex, cache: CacheStore, fetcher: ArticleFetcher,
                 state: Optional[StateStore] = None,
                 max_concurrent: int = MAX_CONCURRENT_REQUESTS,
                 cancel_event: Optional[asyncio.Event] = None,
                 show_progress: bool = False,
                 clock: Optional[Callable[[], datetime]] = None):
        self.catalog = catalog
        self.cache = cache
        self.fetcher = fetcher
        self.state = state or StateStore()
        self.max_concurrent = max(1, max_concurrent)
        self.cancel_event = cancel_event
        self.show_progress = show_progress
        self.clock = clock or (lambda: datetime.now(timezone.utc).replace(microsecond=0))
        self._missed: Dict[str, bool] = {}
        self._flow = FLOW_TARGETS

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _run(self, items: List[Any], worker: Callable[[Any], Awaitable[ResultEntry]],
                   name_of: Callable[[Any], str], desc: str, flow: str) -> ResultLog:
        """
        Process items under a semaphore and collect their results.

        Args:
            items: The items, in processing order
            worker: Reconciles one item and returns its result entry
            name_of: Target id of an item, for cancelled entries
            desc: Progress bar label
            flow: Name the catalog misses of this run are counted under

        Returns:
            The result log, in item order
        """
        log = ResultLog()
        semaphore = asyncio.Semaphore(self.max_concurrent)
        self._missed = {}
        self._flow = flow

        async def process_with_semaphore(position: int, item: Any):
            async with semaphore:
                if self.cancelled:
                    entry = ResultEntry(name_of(item), Status.SKIPPED, CANCELLED_MESSAGE)
                else:
                    try:
                        entry = await worker(item)
                    except Exception as e:
                        logger.exception(f"Unexpected error processing {name_of(item)}: {e}")
                        entry = ResultEntry(name_of(item), Status.FAILED, "Unable to update article.",
                                            error=str(e))
                log.append(entry, position)

        # Tasks start in creation order, so a single worker keeps item order
        tasks = [asyncio.ensure_future(process_with_semaphore(i, item)) for i, item in enumerate(items)]
        for task in tqdm(
            asyncio.as_completed(tasks),
            total=len(tasks),
            desc=desc,
            disable=not self.show_progress,
        ):
            await task

        self.state.save()
        logger.info(f"{desc}: {len(log)} items, {log.counts()}")
        return log

    def _skipped(self, target_id: str, key: ArticleKey, snapshot: ArticleSnapshot,
                 start: float) -> ResultEntry:
        catalog_key = key.catalog_key
        if catalog_key not in self._missed:
            self._missed[catalog_key] = self.state.record_miss(catalog_key, self._flow)
        if self._missed[catalog_key]:
            message = "Article has been missing from the catalog for several runs and may have been removed."
        else:
            message = "Article was not found in the catalog."
        return ResultEntry(target_id, Status.SKIPPED, message, key, _elapsed_ms(start), snapshot)

    def _failed(self, target_id: str, key: ArticleKey, snapshot: ArticleSnapshot,
                start: float, error: Exception) -> ResultEntry:
        return ResultEntry(
            target_id, Status.FAILED, "Unable to update article.", key,
            _elapsed_ms(start), snapshot, error=str(error),
        )

    async def reconcile_targets(self, store: TargetStore, targets: Optional[Iterable[Target]] = None,
                                force_update: bool = False) -> ResultLog:
        """
        Update the article selections held by publishing targets.

        Args:
            store: The target store to write and publish through
            targets: Targets to process, defaults to every target in the store
            force_update: Fetch every article regardless of timestamps

        Returns:
            One result entry per target
        """
        items = list(store.iter_targets() if targets is None else targets)

        async def worker(target: Target) -> ResultEntry:
            return await self._reconcile_target(store, target, force_update)

        return await self._run(items, worker, lambda t: t.id, "Updating targets", FLOW_TARGETS)

    async def _reconcile_target(self, store: TargetStore, target: Target,
                                force_update: bool) -> ResultEntry:
        start = time.monotonic()
        try:
            selection = parse_selection(target.value)
        except SelectionParseError as e:
            logger.warning(f"Skipping {target.id}: {e}")
            return ResultEntry(target.id, Status.SKIPPED, f"Unable to parse article: {e}",
                               elapsed_ms=_elapsed_ms(start))

        key = selection.key
        cached: Optional[CachedArticle] = None
        try:
            local = self.cache.get(key)
            local_ts = None
            if local is not None:
                cached, local_ts = local
            snapshot = ArticleSnapshot.of(key.article_id, cached, selection.url)

            decision = is_stale(local_ts, self.catalog.last_updated(key), force_update)
            if decision is Staleness.SKIP:
                return self._skipped(target.id, key, snapshot, start)
            self.state.clear_miss(key.catalog_key)

            if decision is Staleness.STALE:
                article = await self.fetcher.fetch(key)
                self.cache.save(article)
            else:
                # Fresh cache; it may still be ahead of an interrupted target write
                article = cached

            snapshot = ArticleSnapshot.of(key.article_id, article, selection.url)
            value = render_selection(selection, article, self.clock())
            if not should_write(target.value, value):
                return ResultEntry(target.id, Status.NOT_MODIFIED, "Article is already up-to-date.",
                                   key, _elapsed_ms(start), snapshot)

            store.write(target, value)
            store.publish(target)
            if decision is Staleness.STALE:
                message = "Article was successfully updated."
            else:
                message = "Article was updated from the local cache."
            logger.info(f"Updated {target.id} with article {key.article_id}")
            return ResultEntry(target.id, Status.UPDATED, message, key, _elapsed_ms(start), snapshot)

        except FetchError as e:
            logger.error(f"Unable to update borger.dk article {key.article_id} on {target.id}: {e}")
            return self._failed(target.id, key, ArticleSnapshot.of(key.article_id, cached, selection.url),
                                start, e)
        except Exception as e:
            logger.exception(f"Unexpected error updating {target.id}: {e}")
            return self._failed(target.id, key, ArticleSnapshot.of(key.article_id, cached, selection.url),
                                start, e)

    async def refresh_cache(self, force_update: bool = False) -> ResultLog:
        """
        Refresh every cached article that is older than the catalog.

        Args:
            force_update: Fetch every article regardless of timestamps

        Returns:
            One result entry per cache file

        Raises:
            CacheDirectoryMissing: If the cache directory does not exist
        """
        items = list(self.cache.iter_entries())

        async def worker(entry: CacheEntry) -> ResultEntry:
            return await self._refresh_entry(entry, force_update)

        return await self._run(items, worker, lambda e: e.name, "Refreshing cache", FLOW_CACHE)

    async def _refresh_entry(self, entry: CacheEntry, force_update: bool) -> ResultEntry:
        start = time.monotonic()
        try:
            key = parse_storage_name(entry.name)
        except MalformedKey as e:
            logger.warning(f"Skipping {e}")
            return ResultEntry(entry.name, Status.SKIPPED, str(e), elapsed_ms=_elapsed_ms(start))

        cached: Optional[CachedArticle] = None
        try:
            cached = self.cache.load(entry.raw)
        except ValueError as e:
            logger.warning(f"Unable to read cached article {entry.name}: {e}")

        snapshot = ArticleSnapshot.of(key.article_id, cached)
        try:
            decision = is_stale(entry.modified, self.catalog.last_updated(key), force_update)
            if decision is Staleness.SKIP:
                return self._skipped(entry.name, key, snapshot, start)
            self.state.clear_miss(key.catalog_key)

            if decision is Staleness.FRESH:
                return ResultEntry(entry.name, Status.NOT_MODIFIED, "Article is already up-to-date.",
                                   key, _elapsed_ms(start), snapshot)

            article = await self.fetcher.fetch(key)
            self.cache.save(article)
            snapshot = ArticleSnapshot.of(key.article_id, article)
            if cached is not None and cached.same_content(article):
                return ResultEntry(entry.name, Status.NOT_MODIFIED, "Article content is unchanged.",
                                   key, _elapsed_ms(start), snapshot)
            return ResultEntry(entry.name, Status.UPDATED, "Article was successfully updated.",
                               key, _elapsed_ms(start), snapshot)

        except FetchError as e:
            logger.error(f"Unable to update borger.dk article with ID {key.article_id}: {e}")
            return self._failed(entry.name, key, snapshot, start, e)
        except Exception as e:
            logger.exception(f"Unexpected error refreshing {entry.name}: {e}")
            return self._failed(entry.name, key, snapshot, start, e)
