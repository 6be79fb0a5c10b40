import json
from typing import Any, Dict, List, Optional

import pytest

from keydeal_selector import logger
from keydeal_selector.cache import TTLCache
from keydeal_selector.errors import FetchError
from keydeal_selector.models import (
    CatalogMatch,
    DescriptiveMetadata,
    ListedProduct,
    MatchKind,
    PriceQuote,
)
from keydeal_selector.naming import clean_title
from keydeal_selector.throttle import RequestPacer


class SleepRecorder:
    """Stands in for asyncio.sleep; remembers every requested wait."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """PageFetcher double: returns canned HTML keyed by URL substring."""

    def __init__(self, pages: Optional[Dict[str, Any]] = None):
        self.pages = pages or {}
        self.calls: List[Dict[str, Any]] = []

    async def fetch(self, url, wait_for=None, cookies=None, timeout=None):
        self.calls.append({"url": url, "wait_for": wait_for, "cookies": cookies})
        for fragment, page in self.pages.items():
            if fragment in url:
                if isinstance(page, Exception):
                    raise page
                return page
        raise FetchError(f"HTTP 404 from {url}")


class FakeStoreClient:
    """StoreApiClient double keyed by search term and app id."""

    def __init__(self, search_results=None, details=None):
        self.search_results: Dict[str, Any] = search_results or {}
        self.details: Dict[str, Any] = details or {}
        self.search_calls: List[str] = []
        self.detail_calls: List[Dict[str, Any]] = []

    async def search(self, term):
        self.search_calls.append(term)
        result = self.search_results.get(term, [])
        if isinstance(result, Exception):
            raise result
        return result

    async def app_details(self, app_id, filters=None, timeout=None):
        self.detail_calls.append({"app_id": app_id, "filters": filters})
        result = self.details.get(app_id)
        if isinstance(result, Exception):
            raise result
        return result


class FakeCatalog:
    """Catalog double for engine tests: maps titles to matches and ids to quotes."""

    parser = None

    def __init__(self, matches=None, quotes=None, metadata=None):
        self.matches: Dict[str, Any] = matches or {}
        self.quotes: Dict[str, Any] = quotes or {}
        self.metadata: Dict[str, Any] = metadata or {}
        self.resolved: List[str] = []

    async def resolve(self, name):
        self.resolved.append(name)
        value = self.matches.get(name)
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_price(self, external_id):
        value = self.quotes.get(external_id)
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_metadata(self, external_id, source_title=""):
        value = self.metadata.get(external_id, DescriptiveMetadata.empty(source_title))
        if isinstance(value, Exception):
            raise value
        return value


class FakeSource:
    def __init__(self, products=None, error=None):
        self.products = products or []
        self.error = error
        self.calls = 0

    async def list_products(self, listing_url):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.products)


class FakeResponse:
    def __init__(self, status=200, body="", url="https://example.test/"):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)
        self.url = url

    async def text(self, errors="strict"):
        return self._body

    async def json(self, content_type=None):
        return json.loads(self._body)

    def raise_for_status(self):
        if self.status >= 400:
            raise FetchError(f"HTTP {self.status}")


class _ResponseContext:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """aiohttp.ClientSession double: hands out queued responses or exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, **kwargs):
        self.requests.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        return _ResponseContext(outcome)

    async def close(self):
        pass


def make_product(title: str, price: str, index: int = 0, url: str = "") -> ListedProduct:
    return ListedProduct(
        id=f"game_1700000000000_{index}",
        raw_title=title,
        normalized_title=clean_title(title),
        price_text=price,
        detail_url=url or f"https://www.cdkeys.example/item-{index}",
    )


def make_match(external_id: str, name: str, stage: int = 1) -> CatalogMatch:
    return CatalogMatch(
        external_id=external_id,
        canonical_name=name,
        kind=MatchKind.GAME,
        match_stage=stage,
        matched_term=name,
    )


def make_quote(external_id: str, original: int, final: Optional[int] = None, label=None) -> PriceQuote:
    return PriceQuote(
        external_id=external_id,
        canonical_name=f"App {external_id}",
        original_amount=original,
        final_amount=original if final is None else final,
        discount_label=label,
    )


@pytest.fixture(autouse=True)
def _clean_log_buffer():
    logger.clear_logs()
    logger.set_run_mode("test")
    yield
    logger.clear_logs()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def pacer(sleeps):
    return RequestPacer(item_delay=1.0, attempt_delay=0.5, base_backoff=1.5, sleep=sleeps)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(default_ttl=3600, clock=clock)
