"""
Canonical persisted form of an embedded article.

A CMS property holding a borger.dk article stores the editor's selection
together with a snapshot of the article as XML::

    <article><id>42</id><domain>www.borger.dk</domain>...<lastreloaded>...
    </lastreloaded>...<elements>...</elements></article>

``lastreloaded`` changes on every reload, so it is removed before two values
are compared.
"""
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Optional

from borgersync.core.article import (
    DEFAULT_DOMAIN,
    BlockElement,
    CachedArticle,
    PersistedSelection,
    format_timestamp,
    parse_timestamp,
)
from borgersync.errors import SelectionParseError

_LAST_RELOADED = re.compile(r"<lastreloaded>.*?</lastreloaded>|<lastreloaded\s*/>", re.DOTALL)


def _sub(parent: ET.Element, tag: str, text: Optional[str] = None, **attrib) -> ET.Element:
    child = ET.SubElement(parent, tag, {k: v for k, v in attrib.items() if v is not None})
    if text is not None:
        child.text = text
    return child


def render_selection(selection: PersistedSelection, article: CachedArticle,
                     last_reloaded: Optional[datetime] = None) -> str:
    """
    Render a selection and its article snapshot to the canonical XML value.

    Args:
        selection: The property's selection settings
        article: The article to embed
        last_reloaded: Reload time to record, defaults to now

    Returns:
        The XML string, without formatting whitespace
    """
    if last_reloaded is None:
        last_reloaded = datetime.now(timezone.utc).replace(microsecond=0)

    root = ET.Element("article")
    _sub(root, "id", str(selection.article_id))
    _sub(root, "domain", selection.domain)
    _sub(root, "url", article.url or selection.url)
    _sub(root, "municipalityid", str(selection.municipality_id))
    _sub(root, "reloadinterval", str(selection.reload_interval))
    _sub(root, "lastreloaded", format_timestamp(last_reloaded))
    _sub(root, "selected", ",".join(sorted(selection.selected)))
    _sub(root, "title", article.title)
    _sub(root, "header", article.header)
    _sub(root, "published", format_timestamp(article.published))
    _sub(root, "modified", format_timestamp(article.modified))

    elements = _sub(root, "elements")
    for element in article.elements:
        if isinstance(element, BlockElement):
            block = _sub(elements, "block", type=element.type)
            for micro in element.micro_articles:
                item = _sub(block, "microarticle", id=micro.id)
                _sub(item, "title", micro.title)
                _sub(item, "content", micro.content.strip())
        else:
            text = _sub(elements, "text", type=element.type)
            _sub(text, "title", element.title)
            _sub(text, "content", element.content.strip())

    return ET.tostring(root, encoding="unicode")


def _int(root: ET.Element, tag: str, default: int = 0) -> int:
    value = (root.findtext(tag) or "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise SelectionParseError(f"<{tag}> is not an integer: {value!r}")


def parse_selection(value: str) -> PersistedSelection:
    """
    Parse the selection part of a persisted value.

    Raises:
        SelectionParseError: If the value is not a valid article selection
    """
    try:
        root = ET.fromstring(value)
    except ET.ParseError as e:
        raise SelectionParseError(f"Unable to parse article: {e}")

    if root.tag != "article" or root.find("id") is None:
        raise SelectionParseError("Value is not an article selection")

    selected = (root.findtext("selected") or "").split(",")
    return PersistedSelection(
        article_id=_int(root, "id"),
        domain=(root.findtext("domain") or "").strip() or DEFAULT_DOMAIN,
        url=(root.findtext("url") or "").strip(),
        municipality_id=_int(root, "municipalityid"),
        reload_interval=_int(root, "reloadinterval"),
        selected=frozenset(s.strip() for s in selected if s.strip()),
        last_reloaded=parse_timestamp(root.findtext("lastreloaded")),
    )


def canonical_form(value: str) -> str:
    """Strip the volatile reload timestamp and carriage returns."""
    return _LAST_RELOADED.sub("", value or "").replace("\r", "")


def should_write(old_value: str, new_value: str) -> bool:
    """
    Whether a new persisted value differs in content from the old one.

    Args:
        old_value: The value currently stored on the target
        new_value: The freshly rendered value

    Returns:
        True if the target must be rewritten
    """
    return canonical_form(old_value) != canonical_form(new_value)
