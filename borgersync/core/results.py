"""
Per-item outcomes of a reconciliation run.
"""
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, Iterator, List, Optional

from borgersync.core.article import ArticleKey, CachedArticle

CANCELLED_MESSAGE = "Run was cancelled before this item was processed."


class Status(Enum):
    SKIPPED = "skipped"
    NOT_MODIFIED = "not_modified"
    UPDATED = "updated"
    FAILED = "failed"

    @property
    def code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    Status.SKIPPED: HTTPStatus.NO_CONTENT.value,
    Status.NOT_MODIFIED: HTTPStatus.NOT_MODIFIED.value,
    Status.UPDATED: HTTPStatus.OK.value,
    Status.FAILED: HTTPStatus.INTERNAL_SERVER_ERROR.value,
}


@dataclass(frozen=True)
class ArticleSnapshot:
    """What is known about the article for display in the log."""
    id: int
    title: str = ""
    url: str = ""

    @classmethod
    def of(cls, article_id: int, article: Optional[CachedArticle] = None, url: str = "") -> "ArticleSnapshot":
        if article is None:
            return cls(id=article_id, url=url)
        return cls(id=article_id, title=article.title, url=article.url or url)


@dataclass(frozen=True)
class ResultEntry:
    target_id: str
    status: Status
    message: str
    key: Optional[ArticleKey] = None
    elapsed_ms: float = 0.0
    article: Optional[ArticleSnapshot] = None
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status is Status.SKIPPED and self.message == CANCELLED_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "target": self.target_id,
            "status": self.status.code,
            "message": self.message,
            "duration": round(self.elapsed_ms, 3),
        }
        if self.key is not None:
            data["domain"] = self.key.domain
            data["municipality"] = self.key.municipality_id
        if self.article is not None:
            data["article"] = {
                "id": self.article.id,
                "title": self.article.title,
                "url": self.article.url,
            }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ResultLog:
    """
    Append-only log of result entries.

    Entries may be appended out of order when items run concurrently; each
    carries the position of its target so the log reads in target order.
    """
    _entries: List[tuple] = field(default_factory=list)

    def append(self, entry: ResultEntry, position: Optional[int] = None) -> None:
        if position is None:
            position = len(self._entries)
        self._entries.append((position, entry))

    @property
    def entries(self) -> List[ResultEntry]:
        return [entry for _, entry in sorted(self._entries, key=lambda item: item[0])]

    def __iter__(self) -> Iterator[ResultEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self._entries)

    def with_status(self, status: Status) -> List[ResultEntry]:
        return [e for e in self.entries if e.status is status]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in Status}
        for entry in self.entries:
            counts[entry.status.value] += 1
        return counts

    def to_payload(self, include_skipped: bool = False) -> Dict[str, Any]:
        return {
            "data": [
                e.to_dict() for e in self.entries
                if include_skipped or e.status is not Status.SKIPPED
            ],
            "summary": self.counts(),
        }
