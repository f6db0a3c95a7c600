"""
JSON reports: managed pages and single-article views.
"""
from typing import Any, Dict, Iterable, List

from borgersync.core.article import BlockElement, CachedArticle, TextElement, format_timestamp
from borgersync.core.selection import parse_selection
from borgersync.core.targets import Page
from borgersync.errors import SelectionParseError
from borgersync.fetchers.catalog import CatalogIndex

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Labels shown to editors
TITLE_LABEL = "Overskrift"
HEADER_LABEL = "Manchet"
BLOCK_LABEL = "Hovedindhold"


def _date(value) -> str:
    return value.strftime(DATE_FORMAT) if value else ""


def describe_pages(pages: Iterable[Page], catalog: CatalogIndex) -> List[Dict[str, Any]]:
    """
    Describe every managed property of the given pages against the catalog.

    Pages without managed properties are left out.
    """
    report = []
    for page in pages:
        properties = []
        for prop in page.managed_properties():
            try:
                selection = parse_selection(prop.value)
            except SelectionParseError as e:
                properties.append({"name": prop.alias, "error": str(e)})
                continue

            entry = catalog.lookup(selection.key)
            if entry is None:
                properties.append({
                    "name": prop.alias,
                    "error": f"Article with ID {selection.article_id} for domain "
                             f"{selection.domain} not found.",
                })
                continue

            is_updated = (
                selection.last_reloaded is not None
                and entry.last_updated < selection.last_reloaded
            )
            properties.append({
                "name": prop.alias,
                "info": {
                    "id": selection.article_id,
                    "domain": selection.domain,
                    "url": selection.url,
                    "lastReloaded": format_timestamp(selection.last_reloaded),
                    "municipalityId": selection.municipality_id,
                    "reloadInterval": selection.reload_interval,
                    "selected": sorted(selection.selected),
                    "isUpdated": is_updated,
                    "article": {
                        "id": entry.article_id,
                        "url": entry.url,
                        "title": entry.title,
                        "publishingDate": _date(entry.publishing_date),
                        "lastUpdated": _date(entry.last_updated),
                    },
                },
            })

        if properties:
            report.append({"id": page.id, "name": page.name, "properties": properties})
    return report


def _article_header(article: CachedArticle) -> Dict[str, Any]:
    return {
        "id": article.id,
        "domain": article.domain,
        "url": article.url,
        "published": _date(article.published),
        "modified": _date(article.modified),
        "title": article.title,
        "header": article.header,
    }


def _micro_article(micro) -> Dict[str, Any]:
    return {"type": "microArticle", "id": micro.id, "text": micro.title, "content": micro.content.strip()}


def article_payload(article: CachedArticle) -> Dict[str, Any]:
    """All selectable elements of an article, title and header first."""
    elements: List[Dict[str, Any]] = [
        {"type": "title", "id": "title", "text": TITLE_LABEL, "content": article.title},
        {"type": "header", "id": "header", "text": HEADER_LABEL, "content": article.header},
    ]
    for element in article.elements:
        if isinstance(element, BlockElement):
            elements.append({
                "type": element.type,
                "id": element.type,
                "text": BLOCK_LABEL,
                "content": [_micro_article(m) for m in element.micro_articles],
            })
        else:
            elements.append({
                "type": element.type,
                "id": element.type,
                "text": element.title,
                "content": element.content.strip(),
            })

    payload = _article_header(article)
    payload["elements"] = elements
    return payload


def micro_articles_payload(article: CachedArticle) -> Dict[str, Any]:
    """Micro-articles flattened, other text blocks (except the byline) aside."""
    elements = []
    other = []
    for element in article.elements:
        if isinstance(element, BlockElement):
            elements.extend(_micro_article(m) for m in element.micro_articles)
        elif isinstance(element, TextElement) and element.type != "byline":
            other.append({
                "type": element.type,
                "id": element.type,
                "text": element.title,
                "content": element.content.strip(),
            })

    payload = _article_header(article)
    payload["elements"] = elements
    payload["other"] = other
    return payload
