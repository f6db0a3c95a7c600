"""
Remote article catalog for borgersync.
"""
import logging
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

import backoff

from borgersync.core.article import ArticleKey, CatalogEntry
from borgersync.errors import CatalogBuildFailure
from borgersync.fetchers.borgerdk import (
    TRANSIENT_ERRORS,
    ArticleDescription,
    ClientFactory,
    Endpoint,
)

# Configure logging
logger = logging.getLogger(__name__)

CATALOG_MAX_TRIES = 3


class CatalogIndex(Mapping[str, CatalogEntry]):
    """
    Read-only mapping of ``domain_articleId`` to catalog entries.
    """
    def __init__(self, entries: Optional[Dict[str, CatalogEntry]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    def __getitem__(self, key: str) -> CatalogEntry:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: ArticleKey) -> Optional[CatalogEntry]:
        return self._entries.get(key.catalog_key)

    def last_updated(self, key: ArticleKey) -> Optional[datetime]:
        entry = self.lookup(key)
        return entry.last_updated if entry else None


def _to_entry(domain: str, description: ArticleDescription) -> Optional[CatalogEntry]:
    last_updated = description.last_updated or description.publishing_date
    if last_updated is None:
        logger.warning(f"Article {description.article_id} on {domain} has no update time, ignoring it")
        return None
    return CatalogEntry(
        domain=domain,
        article_id=description.article_id,
        last_updated=last_updated,
        title=description.title,
        url=description.url,
        publishing_date=description.publishing_date,
    )


async def _list_articles(client) -> List[ArticleDescription]:
    return await client.get_all_articles()


async def build_index(endpoints: Iterable[Endpoint], client_factory: ClientFactory,
                      max_tries: int = CATALOG_MAX_TRIES) -> CatalogIndex:
    """
    List every article on every endpoint.

    Transport errors are retried with exponential backoff; if an endpoint
    still cannot be listed the whole build fails, since a partial catalog
    would make articles on that endpoint look removed.

    Args:
        endpoints: The endpoints to query
        client_factory: Creates a client for an endpoint
        max_tries: Attempts per endpoint for transport errors

    Returns:
        The catalog index

    Raises:
        CatalogBuildFailure: If any endpoint could not be listed
    """
    list_articles = backoff.on_exception(
        backoff.expo,
        TRANSIENT_ERRORS,
        max_tries=max_tries,
        logger=logger,
    )(_list_articles)

    entries: Dict[str, CatalogEntry] = {}
    for endpoint in endpoints:
        logger.info(f"Listing articles on {endpoint.domain}")
        try:
            async with client_factory(endpoint) as client:
                descriptions = await list_articles(client)
        except Exception as e:
            raise CatalogBuildFailure(endpoint.domain, e) from e

        for description in descriptions:
            entry = _to_entry(endpoint.domain, description)
            if entry is None:
                continue
            if entry.key in entries:
                logger.warning(f"Duplicate catalog entry {entry.key}, keeping the last one")
            entries[entry.key] = entry

        logger.info(f"Found {len(descriptions)} articles on {endpoint.domain}")

    return CatalogIndex(entries)
