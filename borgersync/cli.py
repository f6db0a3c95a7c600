"""
Command-line interface for borgersync.
"""
import sys
import argparse
import json
import logging
import asyncio
import signal
from datetime import datetime
from typing import Any, Dict, List, Optional

from borgersync.config import Config, load_config
from borgersync.core.cache import CacheStore
from borgersync.core.reconciler import Reconciler
from borgersync.core.report import article_payload, describe_pages, micro_articles_payload
from borgersync.core.results import ResultLog
from borgersync.core.state import StateStore
from borgersync.core.targets import JsonTargetStore, Page, TargetStore, resume_cursor, select_pages
from borgersync.errors import (
    CacheDirectoryMissing,
    CatalogBuildFailure,
    FetchError,
    FetchNotFound,
    ValidationError,
)
from borgersync.fetchers.borgerdk import ArticleFetcher
from borgersync.fetchers.catalog import CATALOG_MAX_TRIES, CatalogIndex, build_index
from borgersync.utils.http import MAX_CONCURRENT_REQUESTS, RATE_LIMIT, REQUEST_TIMEOUT, RateLimiter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def parse_args(argv: Optional[List[str]] = None):
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="Borger.dk article synchronizer")
    parser.add_argument("--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--workers", type=int, help="Number of articles processed at the same time")
    parser.add_argument("--log-level", help="Logging level, e.g. DEBUG or INFO")
    parser.add_argument("--log-file", help="Log file; strftime codes such as %%Y%%m%%d are expanded")

    subparsers = parser.add_subparsers(dest="command", required=True)

    cache_parser = subparsers.add_parser("update-cache", help="Refresh cached articles older than borger.dk")
    cache_parser.add_argument("--force", action="store_true", help="Refetch every cached article")
    cache_parser.add_argument("--include-skipped", action="store_true", help="List skipped entries in the output")
    cache_parser.set_defaults(func=update_cache)

    targets_parser = subparsers.add_parser("update-targets", help="Update the article selections on pages")
    targets_parser.add_argument("--force", action="store_true", help="Refetch every article")
    targets_parser.add_argument("--page", type=int, help="Only update this page")
    targets_parser.add_argument("--steps", type=int, default=0,
                                help="Only update the next N pages, continuing from the last run")
    targets_parser.add_argument("--targets", help="Path to the target store file")
    targets_parser.add_argument("--include-skipped", action="store_true", help="List skipped entries in the output")
    targets_parser.set_defaults(func=update_targets)

    list_parser = subparsers.add_parser("list-articles", help="List the articles selected on pages")
    list_parser.add_argument("--targets", help="Path to the target store file")
    list_parser.set_defaults(func=list_articles)

    article_parser = subparsers.add_parser("article", help="Show a single borger.dk article")
    article_parser.add_argument("--url", help="URL of the article on borger.dk")
    article_parser.add_argument("--municipality", help="Municipality code to localize the article to")
    article_parser.add_argument("--no-cache", action="store_true", help="Always fetch from borger.dk")
    article_parser.add_argument("--micro", action="store_true", help="List micro-articles instead of elements")
    article_parser.set_defaults(func=show_article)

    return parser.parse_args(argv)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Log to stderr, and to a file if one is given. Stdout is kept for JSON output.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(datetime.now().strftime(log_file)))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def error_payload(code: int, message: str) -> Dict[str, Any]:
    return {"meta": {"code": code, "error": message}}


def install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Let SIGINT and SIGTERM stop a run after the items in progress."""
    loop = asyncio.get_running_loop()

    def cancel(sig: signal.Signals):
        logger.warning(f"Received {sig.name}, finishing the articles in progress")
        cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel, sig)
        except NotImplementedError:
            logger.debug(f"Cannot handle {sig.name} on this platform")


def create_fetcher(cfg: Config) -> ArticleFetcher:
    limiter = RateLimiter(cfg.get('rate_limiting.requests_per_second', RATE_LIMIT))
    return ArticleFetcher(
        cfg.endpoints(),
        timeout=cfg.get('rate_limiting.timeout_seconds', REQUEST_TIMEOUT),
        rate_limiter=limiter,
    )


def create_state(cfg: Config) -> StateStore:
    return StateStore(
        cfg.get('state.path'),
        skip_warning_threshold=cfg.get('state.skip_warning_threshold', 3),
    )


async def create_catalog(cfg: Config, fetcher: ArticleFetcher) -> CatalogIndex:
    return await build_index(
        cfg.endpoints(),
        fetcher.client_factory,
        max_tries=cfg.get('rate_limiting.catalog_max_tries', CATALOG_MAX_TRIES),
    )


def create_reconciler(args, cfg: Config, catalog: CatalogIndex, cache: CacheStore,
                      fetcher: ArticleFetcher, state: StateStore,
                      cancel_event: asyncio.Event) -> Reconciler:
    return Reconciler(
        catalog,
        cache,
        fetcher,
        state=state,
        max_concurrent=args.workers or cfg.get('rate_limiting.max_concurrent', MAX_CONCURRENT_REQUESTS),
        cancel_event=cancel_event,
        show_progress=sys.stderr.isatty(),
    )


async def update_cache(args, cfg: Config, cancel_event: asyncio.Event) -> int:
    """Refresh the local article cache against the catalog."""
    cache = CacheStore(cfg.get('cache.directory'))
    if not cache.exists():
        raise CacheDirectoryMissing(str(cache.directory))

    fetcher = create_fetcher(cfg)
    catalog = await create_catalog(cfg, fetcher)
    reconciler = create_reconciler(args, cfg, catalog, cache, fetcher, create_state(cfg), cancel_event)

    log = await reconciler.refresh_cache(force_update=args.force)
    payload = log.to_payload(include_skipped=args.include_skipped)
    payload["meta"] = {"code": 200}
    emit(payload)
    return EXIT_OK


def pages_to_update(args, store: TargetStore, state: StateStore) -> List[Page]:
    """
    The pages an update-targets run covers.

    A stepped run takes the pages after the state cursor; the cursor itself
    is only moved once the run is done, see advance_cursor.

    Raises:
        ValidationError: If the requested page ID is invalid or unknown
    """
    if args.page is not None:
        if args.page <= 0:
            raise ValidationError("Invalid page ID specified.")
        page = store.get_page(args.page)
        if page is None:
            raise ValidationError("Page not found.", code=404)
        return [page]

    pages = list(store.iter_pages())
    if args.steps and args.steps > 0:
        step, _ = select_pages(pages, state.cursor, args.steps)
        logger.info(f"Updating {len(step)} of {len(pages)} pages")
        return step
    return pages


def advance_cursor(store: TargetStore, state: StateStore, step: List[Page], log: ResultLog) -> None:
    """Move the stepped-run cursor past the pages whose targets were all processed."""
    page_of = {target.id: target.page_id for target in store.iter_targets(step)}
    unfinished = {page_of[entry.target_id] for entry in log if entry.cancelled and entry.target_id in page_of}
    state.cursor = resume_cursor(list(store.iter_pages()), step, unfinished)
    state.save()
    logger.info(f"Next stepped run starts at page {state.cursor}")


async def update_targets(args, cfg: Config, cancel_event: asyncio.Event) -> int:
    """Update the article selections held by pages."""
    store = JsonTargetStore(args.targets or cfg.get('targets.path'))
    state = create_state(cfg)
    pages = pages_to_update(args, store, state)

    cache = CacheStore(cfg.get('cache.directory'))
    fetcher = create_fetcher(cfg)
    catalog = await create_catalog(cfg, fetcher)
    reconciler = create_reconciler(args, cfg, catalog, cache, fetcher, state, cancel_event)

    log = await reconciler.reconcile_targets(store, store.iter_targets(pages), force_update=args.force)
    if args.page is None and args.steps and args.steps > 0:
        advance_cursor(store, state, pages, log)
    payload = log.to_payload(include_skipped=args.include_skipped)
    payload["meta"] = {"code": 200}
    emit(payload)
    return EXIT_OK


async def list_articles(args, cfg: Config, cancel_event: asyncio.Event) -> int:
    """Report every article selection together with its catalog entry."""
    store = JsonTargetStore(args.targets or cfg.get('targets.path'))
    catalog = await create_catalog(cfg, create_fetcher(cfg))
    emit({"meta": {"code": 200}, "data": describe_pages(store.iter_pages(), catalog)})
    return EXIT_OK


def parse_municipality(value: Optional[str]) -> int:
    if value is None or value == "":
        raise ValidationError("No municipality ID specified")
    try:
        municipality_id = int(value)
    except ValueError:
        raise ValidationError(f"Invalid municipality ID specified: {value}") from None
    if municipality_id < 0:
        raise ValidationError(f"Invalid municipality ID specified: {value}")
    return municipality_id


async def show_article(args, cfg: Config, cancel_event: asyncio.Event) -> int:
    """Print one article, fetched by URL."""
    fetcher = create_fetcher(cfg)
    url = (args.url or "").split("?")[0]
    fetcher.endpoint_for_url(url)
    municipality_id = parse_municipality(args.municipality)

    cache = None if args.no_cache else CacheStore(cfg.get('cache.directory'))
    try:
        article = await fetcher.fetch_by_url(url, municipality_id, cache=cache)
    except FetchNotFound as e:
        logger.warning(str(e))
        emit(error_payload(404, "The article was not found on borger.dk"))
        return EXIT_FAILURE
    except FetchError as e:
        logger.error(f"Unable to fetch {url}: {e}")
        emit(error_payload(500, "An error occurred while contacting borger.dk"))
        return EXIT_FAILURE

    data = micro_articles_payload(article) if args.micro else article_payload(article)
    emit({"meta": {"code": 200}, "data": data})
    return EXIT_OK


async def async_main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the application.
    """
    args = parse_args(argv)
    cfg = load_config(args.config)
    configure_logging(args.log_level or cfg.get('logging.level', 'INFO'),
                      args.log_file or cfg.get('logging.file'))

    cancel_event = asyncio.Event()
    install_signal_handlers(cancel_event)

    try:
        return await args.func(args, cfg, cancel_event)
    except ValidationError as e:
        logger.error(str(e))
        emit(error_payload(e.code, str(e)))
        return EXIT_INVALID
    except (CatalogBuildFailure, CacheDirectoryMissing) as e:
        logger.error(str(e))
        emit(error_payload(500, str(e)))
        return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the command-line script.
    """
    try:
        return asyncio.run(async_main(argv))
    except KeyboardInterrupt:
        logger.info("Process interrupted by user")
        return EXIT_FAILURE
    except Exception as e:
        logger.exception(f"An error occurred: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
