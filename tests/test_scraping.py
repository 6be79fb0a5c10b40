import asyncio

import aiohttp
import pytest

from keydeal_selector.config import Settings
from keydeal_selector.errors import FetchError
from keydeal_selector.scraping import (
    SCRAPINGBEE_ENDPOINT,
    PageFetcher,
    StoreApiClient,
    fetch_json,
    fetch_with_retries,
)

from conftest import FakeResponse, FakeSession


@pytest.mark.asyncio
async def test_transient_status_is_retried_with_backoff(pacer, sleeps):
    session = FakeSession([FakeResponse(503), FakeResponse(200, "<html>ok</html>")])

    res = await fetch_with_retries(session, "https://a.example/", pacer=pacer)

    assert res["status_code"] == 200
    assert res["page_text"] == "<html>ok</html>"
    assert res["error"] is None
    assert res["attempts"] == 2
    assert sleeps.calls == [1.5]


@pytest.mark.asyncio
async def test_exhausted_retries_return_error_without_body(pacer):
    session = FakeSession([FakeResponse(429)])

    res = await fetch_with_retries(session, "https://a.example/", max_retries=3, pacer=pacer)

    assert res["status_code"] == 429
    assert res["page_text"] is None
    assert res["error"] == "HTTP error: HTTP 429"
    assert res["attempts"] == 3


@pytest.mark.asyncio
async def test_soft_404_keeps_body(pacer):
    session = FakeSession([FakeResponse(404, "gone")])

    res = await fetch_with_retries(session, "https://a.example/", pacer=pacer)

    assert res["status_code"] == 404
    assert res["page_text"] == "gone"
    assert res["error"] is None


@pytest.mark.asyncio
async def test_network_errors_and_timeouts_are_retried(pacer, sleeps):
    session = FakeSession([
        aiohttp.ClientConnectionError("reset"),
        asyncio.TimeoutError(),
        FakeResponse(200, "fine"),
    ])

    res = await fetch_with_retries(session, "https://a.example/", pacer=pacer)

    assert res["page_text"] == "fine"
    assert res["last_exception_type"] == "TimeoutError"
    assert sleeps.calls == [1.5, 3.0]


@pytest.mark.asyncio
async def test_final_timeout_sets_error(pacer):
    session = FakeSession([asyncio.TimeoutError()])

    res = await fetch_with_retries(session, "https://a.example/", timeout=10, max_retries=2, pacer=pacer)

    assert res["status_code"] is None
    assert res["error"] == "HTTP timeout after 10s"


@pytest.mark.asyncio
async def test_scrapingbee_routing_and_hard_errors(pacer):
    session = FakeSession([FakeResponse(401, "bad key")])

    res = await fetch_with_retries(
        session,
        "https://a.example/list",
        params={"page": 2},
        pacer=pacer,
        scrapingbee_api_key="KEY",
        scrapingbee_params={"render_js": "true", "wait_for": ".product-item"},
    )

    request = session.requests[0]
    assert request["url"] == SCRAPINGBEE_ENDPOINT
    assert request["params"]["api_key"] == "KEY"
    assert request["params"]["url"] == "https://a.example/list?page=2"
    assert request["params"]["render_js"] == "true"
    assert res["error"] == "ScrapingBee error: HTTP 401"
    assert res["attempts"] == 1


@pytest.mark.asyncio
async def test_fetch_json_raises_on_http_error_and_bad_json(pacer):
    with pytest.raises(FetchError):
        await fetch_json(FakeSession([FakeResponse(404, "{}")]), "https://a.example/", pacer=pacer)
    with pytest.raises(FetchError):
        await fetch_json(FakeSession([FakeResponse(200, "<html>")]), "https://a.example/", pacer=pacer)


@pytest.mark.asyncio
async def test_store_search_normalizes_items(pacer):
    body = {"total": 2, "items": [
        {"id": 1145360, "name": "Hades", "type": "game"},
        {"name": "no id"},
    ]}
    session = FakeSession([FakeResponse(200, body)])
    client = StoreApiClient(session, Settings(), pacer)

    items = await client.search("Hades")

    assert items == [{"id": "1145360", "name": "Hades", "type": "game"}]
    params = session.requests[0]["params"]
    assert params == {"term": "Hades", "l": "korean", "cc": "KR"}
    assert session.requests[0]["url"].endswith("/storesearch/")


@pytest.mark.asyncio
async def test_app_details_unwraps_data_and_handles_failure(pacer):
    ok = FakeSession([FakeResponse(200, {"620": {"success": True, "data": {"name": "Portal 2"}}})])
    bad = FakeSession([FakeResponse(200, {"1": {"success": False}})])

    assert await StoreApiClient(ok, Settings(), pacer).app_details("620", filters="price_overview,name") == {
        "name": "Portal 2"
    }
    assert ok.requests[0]["params"]["filters"] == "price_overview,name"
    assert await StoreApiClient(bad, Settings(), pacer).app_details("1") is None


@pytest.mark.asyncio
async def test_page_fetcher_raises_fetch_error(pacer):
    session = FakeSession([aiohttp.ClientConnectionError("dns")])
    fetcher = PageFetcher(session, Settings(max_retries=1), pacer)

    with pytest.raises(FetchError):
        await fetcher.fetch("https://a.example/")


@pytest.mark.asyncio
async def test_page_fetcher_uses_scrapingbee_when_enabled(pacer):
    session = FakeSession([FakeResponse(200, "<div class='product-item'></div>")])
    settings = Settings(use_scrapingbee=True, scrapingbee_api_key="KEY")

    html = await PageFetcher(session, settings, pacer).fetch("https://a.example/")

    assert "product-item" in html
    params = session.requests[0]["params"]
    assert params["render_js"] == "true"
    assert params["wait_for"] == ".product-item"
