"""
Borger.dk ArticleExport fetcher for borgersync.

The ArticleExport service is a SOAP 1.1 web service with one endpoint per
borger.dk site. Article bodies come back as an HTML fragment made of
top-level ``<div id="...">`` blocks; the ``kernetekst`` block holds the
micro-articles, every other block is plain text.
"""
import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse
from xml.sax.saxutils import escape

import aiohttp
import async_timeout
from bs4 import BeautifulSoup, Tag

from borgersync.core.article import (
    ArticleKey,
    BlockElement,
    CachedArticle,
    ContentElement,
    MicroArticle,
    TextElement,
    parse_timestamp,
)
from borgersync.core.cache import CacheStore
from borgersync.errors import (
    FetchFault,
    FetchNotFound,
    FetchTimeout,
    InvalidArticleUrl,
    ServiceFault,
    UnknownDomain,
)
from borgersync.utils.http import REQUEST_TIMEOUT, USER_AGENT, RateLimiter

# Configure logging
logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SERVICE_NS = "http://www.borger.dk/2009/WSArticleExport/v1"
SOAP_ACTION = SERVICE_NS + "/IArticleExport/{operation}"

BLOCK_ELEMENT_TYPES = frozenset({"kernetekst"})
MICRO_ARTICLE_PREFIX = "microArticle"

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Endpoint:
    """A borger.dk site and the URL of its ArticleExport service."""
    domain: str
    url: str


@dataclass(frozen=True)
class ArticleDescription:
    article_id: int
    title: str
    url: str
    publishing_date: Optional[datetime]
    last_updated: Optional[datetime]


@dataclass(frozen=True)
class RemoteArticle:
    article_id: int
    title: str
    url: str
    header: str
    content: str
    published: Optional[datetime] = None
    modified: Optional[datetime] = None


def build_envelope(operation: str, params: Optional[Dict[str, object]] = None) -> str:
    """
    Build a SOAP request envelope.

    Args:
        operation: The service operation, e.g. ``GetArticleByID``
        params: Operation parameters in order

    Returns:
        The envelope XML
    """
    args = "".join(
        f"<{name}>{escape(str(value))}</{name}>" for name, value in (params or {}).items()
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENV_NS}"><s:Body>'
        f'<{operation} xmlns="{SERVICE_NS}">{args}</{operation}>'
        "</s:Body></s:Envelope>"
    )


def parse_soap_body(text: str, status: int = 200) -> ET.Element:
    """
    Parse a SOAP response and return its Body element.

    Raises:
        ServiceFault: If the response is a fault, or not a SOAP response
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        raise ServiceFault(f"Unexpected response from service (HTTP {status})")

    fault = root.find(".//{*}Fault")
    if fault is not None:
        code = (fault.findtext("faultcode") or fault.findtext(".//{*}Value") or "").strip()
        message = (fault.findtext("faultstring") or fault.findtext(".//{*}Text") or "").strip()
        raise ServiceFault(message or "Unknown fault", code or None)

    body = root.find("{*}Body")
    if status >= 400 or body is None:
        raise ServiceFault(f"Unexpected response from service (HTTP {status})")
    return body


def _text(node: ET.Element, name: str) -> str:
    return (node.findtext("{*}" + name) or "").strip()


def _int(node: ET.Element, name: str) -> int:
    try:
        return int(_text(node, name))
    except ValueError:
        return 0


def parse_article_descriptions(body: ET.Element) -> List[ArticleDescription]:
    return [
        ArticleDescription(
            article_id=_int(node, "ArticleID"),
            title=_text(node, "ArticleTitle"),
            url=_text(node, "ArticleUrl"),
            publishing_date=parse_timestamp(_text(node, "PublishingDate")),
            last_updated=parse_timestamp(_text(node, "LastUpdated")),
        )
        for node in body.findall(".//{*}ArticleDescription")
    ]


def parse_article(body: ET.Element) -> RemoteArticle:
    node = next((n for n in body.iter() if n.find("{*}ArticleID") is not None), None)
    if node is None:
        raise ServiceFault("Response does not contain an article")
    return RemoteArticle(
        article_id=_int(node, "ArticleID"),
        title=_text(node, "ArticleTitle"),
        url=_text(node, "ArticleUrl"),
        header=_text(node, "ArticleHeader"),
        content=node.findtext("{*}Content") or "",
        published=parse_timestamp(_text(node, "PublishingDate")),
        modified=parse_timestamp(_text(node, "LastUpdated")),
    )


class ArticleExportClient:
    """
    Client for one ArticleExport endpoint. Use as an async context manager;
    the HTTP session is closed on exit.
    """
    def __init__(self, endpoint: Endpoint, timeout: float = REQUEST_TIMEOUT,
                 rate_limiter: Optional[RateLimiter] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ArticleExportClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _call(self, operation: str, params: Optional[Dict[str, object]] = None) -> ET.Element:
        domain = self.endpoint.domain
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(domain)

        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": '"%s"' % SOAP_ACTION.format(operation=operation),
        }
        try:
            async with async_timeout.timeout(self.timeout):
                async with self.session.post(
                    self.endpoint.url,
                    data=build_envelope(operation, params).encode("utf-8"),
                    headers=headers,
                ) as response:
                    status = response.status
                    text = await response.text()
        except TRANSIENT_ERRORS:
            if self.rate_limiter is not None:
                self.rate_limiter.report_failure(domain)
            raise

        if self.rate_limiter is not None:
            self.rate_limiter.report_success(domain)
        return parse_soap_body(text, status)

    async def get_all_articles(self) -> List[ArticleDescription]:
        body = await self._call("GetAllArticles")
        return parse_article_descriptions(body)

    async def get_article_by_id(self, article_id: int, municipality_id: int = 0) -> RemoteArticle:
        body = await self._call("GetArticleByID", {
            "articleID": article_id,
            "municipalityCode": municipality_id,
        })
        return parse_article(body)

    async def get_article_by_url(self, url: str, municipality_id: int = 0) -> RemoteArticle:
        body = await self._call("GetArticleByUrl", {
            "articleUrl": url,
            "municipalityCode": municipality_id,
        })
        return parse_article(body)


def _content_blocks(container: Tag) -> Iterable[Tag]:
    for child in container.find_all("div", recursive=False):
        if child.get("id"):
            yield child
        else:
            # Unnamed wrapper
            yield from _content_blocks(child)


def _pop_heading(block: Tag, name: str) -> str:
    heading = block.find(name)
    if heading is None:
        return ""
    title = heading.get_text(" ", strip=True)
    heading.extract()
    return title


def parse_content(html: str) -> List[ContentElement]:
    """
    Split an article body into its content elements, in document order.

    Args:
        html: The HTML fragment returned by the service

    Returns:
        List of text and block elements
    """
    soup = BeautifulSoup(html or "", "html.parser")
    elements: List[ContentElement] = []

    for block in _content_blocks(soup):
        element_type = block["id"]
        if element_type in BLOCK_ELEMENT_TYPES:
            micro_articles = []
            for micro in block.find_all("div", class_=MICRO_ARTICLE_PREFIX):
                micro_id = micro.get("id", "")
                if micro_id.startswith(MICRO_ARTICLE_PREFIX):
                    micro_id = micro_id[len(MICRO_ARTICLE_PREFIX):]
                title = _pop_heading(micro, "h2")
                micro_articles.append(MicroArticle(
                    id=micro_id,
                    title=title,
                    content=micro.decode_contents().strip(),
                ))
            elements.append(BlockElement(type=element_type, micro_articles=tuple(micro_articles)))
        else:
            title = _pop_heading(block, "h3")
            elements.append(TextElement(
                type=element_type,
                title=title,
                content=block.decode_contents().strip(),
            ))

    return elements


def normalize_article(remote: RemoteArticle, domain: str, municipality_id: int,
                      fetched_at: Optional[datetime] = None) -> CachedArticle:
    """Map a service response onto the cached article model."""
    return CachedArticle(
        id=remote.article_id,
        domain=domain,
        title=remote.title.strip(),
        url=remote.url,
        header=remote.header.strip(),
        municipality_id=municipality_id,
        elements=parse_content(remote.content),
        published=remote.published,
        modified=remote.modified,
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )


ClientFactory = Callable[[Endpoint], ArticleExportClient]


class ArticleFetcher:
    """
    Fetches single articles, opening a fresh client for every call.
    """
    def __init__(self, endpoints: Iterable[Endpoint], client_factory: Optional[ClientFactory] = None,
                 timeout: float = REQUEST_TIMEOUT, rate_limiter: Optional[RateLimiter] = None):
        self.endpoints = {e.domain.lower(): e for e in endpoints}
        if client_factory is None:
            limiter = rate_limiter or RateLimiter()

            def client_factory(endpoint: Endpoint) -> ArticleExportClient:
                return ArticleExportClient(endpoint, timeout=timeout, rate_limiter=limiter)

        self.client_factory = client_factory

    def endpoint_for_url(self, url: str) -> Endpoint:
        """
        Resolve the endpoint serving a borger.dk article URL.

        Raises:
            InvalidArticleUrl: If the URL is empty or not an article URL
            UnknownDomain: If no endpoint serves the URL's host
        """
        if not url:
            raise InvalidArticleUrl("No borger.dk URL specified")
        parsed = urlparse(url.split("?")[0])
        if parsed.scheme not in ("http", "https") or not parsed.netloc or parsed.path.strip("/") == "":
            raise InvalidArticleUrl(f"Invalid borger.dk URL specified: {url}")
        endpoint = self.endpoints.get(parsed.netloc.lower())
        if endpoint is None:
            raise UnknownDomain(f"No endpoint configured for {parsed.netloc}")
        return endpoint

    async def _fetch(self, domain: str, municipality_id: int, label: str,
                     call: Callable[[ArticleExportClient], Awaitable[RemoteArticle]]) -> CachedArticle:
        endpoint = self.endpoints.get(domain.lower())
        if endpoint is None:
            raise FetchFault(f"No endpoint configured for domain {domain}")

        try:
            async with self.client_factory(endpoint) as client:
                remote = await call(client)
        except ServiceFault as e:
            if e.not_found:
                raise FetchNotFound(f"No article found for {label}") from e
            raise FetchFault(f"Service fault for {label}: {e.message}") from e
        except asyncio.TimeoutError as e:
            raise FetchTimeout(f"Timed out fetching {label}") from e
        except aiohttp.ClientError as e:
            raise FetchFault(f"Unable to reach {endpoint.domain} for {label}: {e}") from e

        return normalize_article(remote, endpoint.domain, municipality_id)

    async def fetch(self, key: ArticleKey) -> CachedArticle:
        """
        Fetch an article by its key, localized to the key's municipality.

        Args:
            key: The article key

        Returns:
            The normalized article

        Raises:
            FetchNotFound: The service has no such article
            FetchFault: The service or transport failed
            FetchTimeout: The request timed out
        """
        logger.debug(f"Fetching article {key.article_id} from {key.domain}")
        return await self._fetch(
            key.domain, key.municipality_id, f"article {key.article_id}",
            lambda client: client.get_article_by_id(key.article_id, key.municipality_id),
        )

    async def fetch_by_url(self, url: str, municipality_id: int,
                           cache: Optional[CacheStore] = None) -> CachedArticle:
        """
        Fetch an article by its borger.dk URL, preferring a cached copy.

        Args:
            url: The article URL; any query string is ignored
            municipality_id: Municipality to localize the article to
            cache: Cache to read from and save to, if any

        Returns:
            The normalized article
        """
        url = url.split("?")[0]
        endpoint = self.endpoint_for_url(url)

        if cache is not None:
            cached = cache.find_by_url(url, municipality_id)
            if cached is not None:
                return cached

        article = await self._fetch(
            endpoint.domain, municipality_id, url,
            lambda client: client.get_article_by_url(url, municipality_id),
        )
        if cache is not None:
            cache.save(article)
        return article
