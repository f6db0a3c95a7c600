import asyncio
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from borgersync.core.article import ArticleKey
from borgersync.core.cache import CacheStore
from borgersync.core.targets import SELECTION_KIND, Page, Property, Target, TargetStore
from borgersync.errors import ServiceFault
from borgersync.fetchers.borgerdk import ArticleDescription, ArticleFetcher, Endpoint, RemoteArticle
from borgersync.fetchers.catalog import build_index

BORGER = Endpoint("www.borger.dk", "https://www.borger.dk/_vti_bin/borger/ArticleExport.svc")
LIFE = Endpoint("lifeindenmark.borger.dk", "https://lifeindenmark.borger.dk/_vti_bin/borger/ArticleExport.svc")

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)

PENSION_HTML = (
    '<div id="byline"><h3>Skrevet af</h3><p>Borger.dk</p></div>'
    '<div id="kernetekst">'
    '<div class="microArticle" id="microArticle101"><h2>Hvem kan få pension?</h2><p>Du skal være 67 år.</p></div>'
    '<div class="microArticle" id="microArticle102"><h2>Sådan søger du</h2><p>Søg på borger.dk.</p></div>'
    '</div>'
    '<div id="selvbetjeningslinks"><h3>Selvbetjening</h3><ul><li>Søg om pension</li></ul></div>'
)


def remote_article(article_id: int = 42, title: str = "Pension", content: str = PENSION_HTML,
                   url: Optional[str] = None) -> RemoteArticle:
    return RemoteArticle(
        article_id=article_id,
        title=title,
        url=url or f"https://www.borger.dk/artikel-{article_id}",
        header="Om folkepension",
        content=content,
        published=T1,
        modified=T2,
    )


def selection_value(article_id: int = 42, domain: str = "www.borger.dk", municipality_id: int = 0,
                    selected: str = "101") -> str:
    """A freshly configured property value, before its first reload."""
    return (
        f"<article><id>{article_id}</id><domain>{domain}</domain>"
        f"<municipalityid>{municipality_id}</municipalityid><reloadinterval>0</reloadinterval>"
        f"<selected>{selected}</selected></article>"
    )


def set_age(cache: CacheStore, key: ArticleKey, when: datetime) -> None:
    """Backdate a cache file."""
    ts = when.timestamp()
    os.utime(cache.path_for(key), (ts, ts))


class FakeService:
    """In-memory ArticleExport service shared by every client it creates."""

    def __init__(self):
        self.articles: Dict[tuple, RemoteArticle] = {}
        self.listings: Dict[str, List[ArticleDescription]] = {}
        self.errors: Dict[object, Exception] = {}
        self.calls: List[tuple] = []
        self.opened = 0
        self.closed = 0
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, domain: str, article: RemoteArticle, last_updated: Optional[datetime] = T2) -> None:
        self.articles[(domain, article.article_id)] = article
        self.listings.setdefault(domain, []).append(ArticleDescription(
            article_id=article.article_id,
            title=article.title,
            url=article.url,
            publishing_date=T1,
            last_updated=last_updated,
        ))

    def client_factory(self, endpoint: Endpoint) -> "FakeClient":
        return FakeClient(self, endpoint)

    def fetches(self) -> int:
        return sum(1 for call in self.calls if call[0] != "GetAllArticles")


class FakeClient:
    def __init__(self, service: FakeService, endpoint: Endpoint):
        self.service = service
        self.endpoint = endpoint

    async def __aenter__(self):
        self.service.opened += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.service.closed += 1

    async def get_all_articles(self) -> List[ArticleDescription]:
        domain = self.endpoint.domain
        self.service.calls.append(("GetAllArticles", domain))
        if domain in self.service.errors:
            raise self.service.errors[domain]
        return list(self.service.listings.get(domain, []))

    async def _get(self, article_id: int) -> RemoteArticle:
        service = self.service
        service.in_flight += 1
        service.max_in_flight = max(service.max_in_flight, service.in_flight)
        try:
            if service.delay:
                await asyncio.sleep(service.delay)
            error = service.errors.get((self.endpoint.domain, article_id))
            if error is not None:
                raise error
            article = service.articles.get((self.endpoint.domain, article_id))
            if article is None:
                raise ServiceFault(f"No article found with id {article_id}")
            return article
        finally:
            service.in_flight -= 1

    async def get_article_by_id(self, article_id: int, municipality_id: int = 0) -> RemoteArticle:
        self.service.calls.append(("GetArticleByID", self.endpoint.domain, article_id, municipality_id))
        return await self._get(article_id)

    async def get_article_by_url(self, url: str, municipality_id: int = 0) -> RemoteArticle:
        self.service.calls.append(("GetArticleByUrl", self.endpoint.domain, url, municipality_id))
        for (domain, article_id), article in self.service.articles.items():
            if domain == self.endpoint.domain and article.url == url:
                return await self._get(article_id)
        raise ServiceFault(f"No article found with url {url}")


class FakeTargetStore(TargetStore):
    """Pages kept in memory; records every write and publish."""

    def __init__(self, pages: Optional[List[Page]] = None, fail_writes: int = 0):
        self.pages = pages or []
        self.writes: List[tuple] = []
        self.published: List[str] = []
        self.fail_writes = fail_writes
        self.on_publish = None

    def iter_pages(self):
        return iter(list(self.pages))

    def get_page(self, page_id: int) -> Optional[Page]:
        return next((p for p in self.pages if p.id == page_id), None)

    def write(self, target: Target, value: str) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise RuntimeError("Target store is unavailable")
        page = self.get_page(target.page_id)
        prop = next(p for p in page.properties if p.alias == target.alias)
        prop.value = value
        self.writes.append((target.id, value))

    def publish(self, target: Target) -> None:
        self.published.append(target.id)
        if self.on_publish is not None:
            self.on_publish(target)

    def value(self, page_id: int, alias: str = "article") -> str:
        page = self.get_page(page_id)
        return next(p.value for p in page.properties if p.alias == alias)


def article_page(page_id: int, name: str, value: str, alias: str = "article") -> Page:
    return Page(id=page_id, name=name, properties=[
        Property(alias="intro", kind="text", value="Velkommen"),
        Property(alias=alias, kind=SELECTION_KIND, value=value),
    ])


def build_catalog(service: FakeService, endpoints=(BORGER, LIFE)):
    return asyncio.run(build_index(list(endpoints), service.client_factory, max_tries=1))


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def fetcher(service):
    return ArticleFetcher([BORGER, LIFE], client_factory=service.client_factory)


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache" / "borgerdk")
