"""
Publishing targets: the CMS properties that embed borger.dk articles.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

logger = logging.getLogger(__name__)

# Properties holding a managed article selection carry this kind
SELECTION_KIND = "borgerdk-article"


@dataclass
class Property:
    alias: str
    kind: str
    value: str = ""


@dataclass
class Page:
    id: int
    name: str
    properties: List[Property] = field(default_factory=list)
    published_at: Optional[str] = None

    def managed_properties(self) -> List[Property]:
        return [p for p in self.properties if p.kind == SELECTION_KIND]


@dataclass(frozen=True)
class Target:
    """One property slot holding a persisted article selection."""
    page_id: int
    page_name: str
    alias: str
    value: str

    @property
    def id(self) -> str:
        return f"{self.page_id}/{self.alias}"


class TargetStore(ABC):
    """
    Access to the pages of a CMS. The reconciler only reads target values,
    rewrites them and publishes the page afterwards.
    """

    @abstractmethod
    def iter_pages(self) -> Iterator[Page]:
        ...

    @abstractmethod
    def get_page(self, page_id: int) -> Optional[Page]:
        ...

    @abstractmethod
    def write(self, target: Target, value: str) -> None:
        ...

    @abstractmethod
    def publish(self, target: Target) -> None:
        ...

    def iter_targets(self, pages: Optional[Iterable[Page]] = None) -> Iterator[Target]:
        """Yield every managed property, in page order."""
        for page in (self.iter_pages() if pages is None else pages):
            for prop in page.managed_properties():
                yield Target(page.id, page.name, prop.alias, prop.value)


def _page_from_dict(data: Dict[str, Any]) -> Page:
    return Page(
        id=int(data["id"]),
        name=data.get("name") or "",
        properties=[
            Property(alias=p["alias"], kind=p.get("kind") or "", value=p.get("value") or "")
            for p in data.get("properties") or []
        ],
        published_at=data.get("publishedAt"),
    )


def _page_to_dict(page: Page) -> Dict[str, Any]:
    return {
        "id": page.id,
        "name": page.name,
        "publishedAt": page.published_at,
        "properties": [
            {"alias": p.alias, "kind": p.kind, "value": p.value} for p in page.properties
        ],
    }


class JsonTargetStore(TargetStore):
    """
    Target store backed by a JSON export of the content tree::

        {"pages": [{"id": 1050, "name": "Pension", "publishedAt": null,
                    "properties": [{"alias": "article", "kind": "borgerdk-article",
                                    "value": "<article>...</article>"}]}]}

    Every write and publish is saved to disk immediately.
    """
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.pages: List[Page] = self._load()

    def _load(self) -> List[Page]:
        if not self.path.exists():
            logger.warning(f"Target file {self.path} not found, no pages to update")
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return [_page_from_dict(p) for p in data.get("pages") or []]

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"pages": [_page_to_dict(p) for p in self.pages]}, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def iter_pages(self) -> Iterator[Page]:
        return iter(list(self.pages))

    def get_page(self, page_id: int) -> Optional[Page]:
        return next((p for p in self.pages if p.id == page_id), None)

    def _property(self, target: Target) -> Property:
        page = self.get_page(target.page_id)
        prop = next((p for p in page.properties if p.alias == target.alias), None) if page else None
        if prop is None:
            raise KeyError(f"No property {target.id}")
        return prop

    def write(self, target: Target, value: str) -> None:
        self._property(target).value = value
        self.save()

    def publish(self, target: Target) -> None:
        page = self.get_page(target.page_id)
        if page is None:
            raise KeyError(f"No page {target.page_id}")
        page.published_at = datetime.now(timezone.utc).isoformat()
        self.save()
        logger.info(f"Published page {page.id} ({page.name})")


def select_pages(pages: List[Page], cursor: int, count: int) -> Tuple[List[Page], int]:
    """
    Pick the next ``count`` pages of a stepped run.

    Args:
        pages: All pages, in tree order
        cursor: Index of the first page of this step
        count: Pages per step; 0 or less means all pages

    Returns:
        The pages of this step and the cursor for the next one
    """
    if count <= 0 or not pages:
        return list(pages), 0
    if cursor < 0 or cursor >= len(pages):
        cursor = 0
    step = pages[cursor:cursor + count]
    next_cursor = cursor + count
    if next_cursor >= len(pages):
        next_cursor = 0
    return step, next_cursor


def resume_cursor(pages: List[Page], step: List[Page], unfinished: Set[int]) -> int:
    """
    Cursor for the next stepped run once a step has been processed.

    The cursor moves past the pages of the step up to the first unfinished
    one, so pages a cancelled run never reached are taken again next time.

    Args:
        pages: All pages, in tree order
        step: The pages of the step, as returned by select_pages
        unfinished: IDs of pages with targets that were not processed

    Returns:
        The cursor for the next run
    """
    if not step:
        return 0
    positions = {page.id: i for i, page in enumerate(pages)}
    done = 0
    for page in step:
        if page.id in unfinished:
            break
        done += 1
    cursor = positions.get(step[0].id, 0) + done
    return 0 if cursor >= len(pages) else cursor
