"""
Article data model for borgersync.
"""
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Optional, Tuple, Union

DEFAULT_DOMAIN = "www.borger.dk"


def catalog_key(domain: str, article_id: int) -> str:
    """Catalog identity of an article; the municipality is not part of it."""
    return f"{domain}_{article_id}"


@dataclass(frozen=True)
class ArticleKey:
    """
    Addresses a remote article and its local cache entry.
    """
    domain: str
    article_id: int
    municipality_id: int = 0

    @property
    def catalog_key(self) -> str:
        return catalog_key(self.domain, self.article_id)


@dataclass(frozen=True)
class CatalogEntry:
    """
    One article as listed by a remote endpoint.
    """
    domain: str
    article_id: int
    last_updated: datetime
    title: str = ""
    url: str = ""
    publishing_date: Optional[datetime] = None

    @property
    def key(self) -> str:
        return catalog_key(self.domain, self.article_id)


@dataclass(frozen=True)
class MicroArticle:
    id: str
    title: str
    content: str


@dataclass(frozen=True)
class TextElement:
    """A flat prose block such as the byline or a list of links."""
    type: str
    title: str
    content: str


@dataclass(frozen=True)
class BlockElement:
    """A container of micro-articles (the main body of an article)."""
    type: str
    micro_articles: Tuple[MicroArticle, ...] = ()


ContentElement = Union[TextElement, BlockElement]


@dataclass
class CachedArticle:
    """
    A fetched article as stored in the local cache.
    """
    id: int
    domain: str
    title: str
    url: str
    header: str = ""
    municipality_id: int = 0
    elements: List[ContentElement] = field(default_factory=list)
    published: Optional[datetime] = None
    modified: Optional[datetime] = None
    fetched_at: Optional[datetime] = None

    @property
    def key(self) -> ArticleKey:
        return ArticleKey(self.domain, self.id, self.municipality_id)

    def same_content(self, other: "CachedArticle") -> bool:
        """Compare two articles, ignoring when they were fetched."""
        return replace(self, fetched_at=None) == replace(other, fetched_at=None)


@dataclass(frozen=True)
class PersistedSelection:
    """
    The per-property configuration of an embedded article.
    """
    article_id: int
    domain: str = DEFAULT_DOMAIN
    url: str = ""
    municipality_id: int = 0
    reload_interval: int = 0
    selected: FrozenSet[str] = frozenset()
    last_reloaded: Optional[datetime] = None

    @property
    def key(self) -> ArticleKey:
        return ArticleKey(self.domain, self.article_id, self.municipality_id)


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp as sent by the web service.

    Naive timestamps are taken to be UTC. Returns None for empty or
    unparsable values, and for anything that is not a string.
    """
    if not isinstance(value, str) or not value:
        return None
    # fromisoformat wants exactly six fractional digits before 3.11
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.strip(), count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
