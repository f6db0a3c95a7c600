"""
Cache management for borgersync.
"""
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from borgersync.core.article import (
    ArticleKey,
    BlockElement,
    CachedArticle,
    ContentElement,
    MicroArticle,
    TextElement,
    format_timestamp,
    parse_timestamp,
)
from borgersync.core.keys import EXTENSION, file_name
from borgersync.errors import CacheDirectoryMissing

logger = logging.getLogger(__name__)

# Cache configuration
CACHE_DIR = Path("cache") / "borgerdk"


@dataclass(frozen=True)
class CacheEntry:
    """A raw cache file as found on disk."""
    name: str
    raw: bytes
    modified: datetime


def _element_to_dict(element: ContentElement) -> Dict[str, Any]:
    if isinstance(element, BlockElement):
        return {
            "kind": "block",
            "type": element.type,
            "microArticles": [
                {"id": m.id, "title": m.title, "content": m.content}
                for m in element.micro_articles
            ],
        }
    return {
        "kind": "text",
        "type": element.type,
        "title": element.title,
        "content": element.content,
    }


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _element_from_dict(data: Dict[str, Any]) -> ContentElement:
    if data.get("kind") == "block" or "microArticles" in data:
        micro_articles = data.get("microArticles")
        return BlockElement(
            type=_text(data.get("type")),
            micro_articles=tuple(
                MicroArticle(
                    id=str(m.get("id") or ""),
                    title=_text(m.get("title")),
                    content=_text(m.get("content")).strip(),
                )
                for m in (micro_articles if isinstance(micro_articles, list) else [])
                if isinstance(m, dict)
            ),
        )
    return TextElement(
        type=_text(data.get("type")),
        title=_text(data.get("title")),
        content=_text(data.get("content")).strip(),
    )


def article_to_dict(article: CachedArticle) -> Dict[str, Any]:
    return {
        "id": article.id,
        "domain": article.domain,
        "url": article.url,
        "municipalityId": article.municipality_id,
        "title": article.title,
        "header": article.header,
        "published": format_timestamp(article.published),
        "modified": format_timestamp(article.modified),
        "fetchedAt": format_timestamp(article.fetched_at),
        "elements": [_element_to_dict(e) for e in article.elements],
    }


def article_from_dict(data: Dict[str, Any]) -> CachedArticle:
    """
    Build an article from its cached form, defaulting fields that older
    cache files do not have or hold with an unexpected type.
    """
    elements = data.get("elements")
    return CachedArticle(
        id=int(data.get("id") or 0),
        domain=_text(data.get("domain")) or "www.borger.dk",
        title=_text(data.get("title")),
        url=_text(data.get("url")),
        header=_text(data.get("header")),
        municipality_id=int(data.get("municipalityId") or 0),
        elements=[_element_from_dict(e) for e in (elements if isinstance(elements, list) else [])
                  if isinstance(e, dict)],
        published=parse_timestamp(data.get("published")),
        modified=parse_timestamp(data.get("modified")),
        fetched_at=parse_timestamp(data.get("fetchedAt")),
    )


class CacheStore:
    """
    Stores fetched articles as JSON files, one per article key.

    The modification time of each file is the freshness marker of the cached
    copy: a file written after the catalog's last update is up to date.
    """
    def __init__(self, directory: Union[str, Path] = CACHE_DIR):
        self.directory = Path(directory)

    def exists(self) -> bool:
        return self.directory.is_dir()

    def _init_cache_dir(self):
        """Initialize the cache directory."""
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: ArticleKey) -> Path:
        return self.directory / file_name(key)

    def iter_entries(self) -> Iterator[CacheEntry]:
        """
        Lazily enumerate every cache file.

        Raises:
            CacheDirectoryMissing: If the storage directory does not exist
        """
        if not self.exists():
            raise CacheDirectoryMissing(str(self.directory))

        for path in sorted(self.directory.glob("*" + EXTENSION)):
            try:
                raw = path.read_bytes()
                modified = _mtime(path)
            except OSError as e:
                logger.warning(f"Unable to read cache file {path}: {e}")
                continue
            yield CacheEntry(name=path.name, raw=raw, modified=modified)

    @staticmethod
    def load(raw: Union[bytes, str]) -> CachedArticle:
        """
        Parse a raw cache file.

        Raises:
            ValueError: If the content is not a JSON object or does not
                describe an article
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("cached article is not a JSON object")
        try:
            return article_from_dict(data)
        except (TypeError, AttributeError) as e:
            raise ValueError(f"cached article is malformed: {e}") from e

    def get(self, key: ArticleKey) -> Optional[Tuple[CachedArticle, datetime]]:
        """
        Get a cached article and the time it was written.

        Args:
            key: The article key

        Returns:
            Tuple of article and timestamp, or None if there is no usable entry
        """
        path = self.path_for(key)
        if not path.is_file():
            return None
        try:
            return self.load(path.read_bytes()), _mtime(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None

    def find_by_url(self, url: str, municipality_id: int) -> Optional[CachedArticle]:
        """Find a cached article by its borger.dk URL."""
        if not self.exists():
            return None
        for entry in self.iter_entries():
            try:
                article = self.load(entry.raw)
            except ValueError:
                continue
            if article.url == url and article.municipality_id == municipality_id:
                return article
        return None

    def save(self, article: CachedArticle) -> Path:
        """
        Write an article to the cache, replacing any previous copy.

        Args:
            article: The article to cache

        Returns:
            Path of the cache file
        """
        self._init_cache_dir()
        path = self.path_for(article.key)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(article_to_dict(article), f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
        logger.debug(f"Cached article {article.id} as {path.name}")
        return path


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
