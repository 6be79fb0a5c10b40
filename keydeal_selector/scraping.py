# keydeal_selector/scraping.py
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .config import (
    LISTING_ITEM_SELECTOR,
    STEAM_STORE_API_BASE,
    USER_AGENT,
    Settings,
)
from .errors import FetchError
from .logger import log
from .throttle import RequestPacer

# Base ScrapingBee endpoint
SCRAPINGBEE_ENDPOINT = "https://app.scrapingbee.com/api/v1/"
DEFAULT_TIMEOUT = 30  # seconds

# HTTP codes we consider transient and worth retrying
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}

# Hard ScrapingBee account errors: never retried
SCRAPINGBEE_HARD_CODES = {401, 402, 403}

# Lets the HTML app pages through the store's age check (born 1990)
STORE_AGE_COOKIES = {
    "birthtime": "631152001",
    "lastagecheckage": "1-0-1990",
    "wants_mature_content": "1",
}


def _build_params(
    api_key: str,
    url: str,
    extra_params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the ScrapingBee query parameters, allowing caller-provided overrides.

    Defaults:
      - render_js = false  (caller turns it on for the listing page)
    """
    base: Dict[str, Any] = {
        "api_key": api_key,
        "url": url,
        "render_js": "false",
    }
    if extra_params:
        # Caller wins on conflicts
        base.update(extra_params)
    return base


def _result(
    url: str,
    attempt: int,
    start_time: float,
    status: Optional[int] = None,
    final_url: Optional[str] = None,
    page_text: Optional[str] = None,
    error: Optional[str] = None,
    last_exception_type: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "status_code": status,
        "final_url": final_url or url,
        "page_text": page_text,
        "error": error,
        "response_ms": (time.perf_counter() - start_time) * 1000.0,
        "request_url": url,
        "attempts": attempt,
        "last_exception_type": last_exception_type,
    }


async def fetch_with_retries(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    cookies: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = 3,
    pacer: Optional[RequestPacer] = None,
    base_backoff: float = 1.5,
    scrapingbee_api_key: Optional[str] = None,
    scrapingbee_params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Fetch a single URL, directly or through ScrapingBee when an API key is
    given, retrying transient HTTP errors (429, 500, 502, 503, 504).

    Normalized return shape:

        {
          "status_code": int | None,
          "final_url": str | None,
          "page_text": str | None,
          "error": str | None,
          "response_ms": float | None,
          # extra metadata
          "request_url": str,
          "attempts": int,
          "last_exception_type": str | None,
        }

    Behavior:
      - 429 / 5xx → retried up to max_retries; on final failure: error, no body.
      - 401 / 402 / 403 through ScrapingBee → hard errors, no retry.
      - other 4xx → not retried; body is returned and error is None, so the
        caller decides what a 404 means.
      - Network / timeout exceptions → retried; final failure sets error, no body.
    """
    if scrapingbee_api_key:
        target = SCRAPINGBEE_ENDPOINT
        query: Optional[Dict[str, Any]] = _build_params(
            scrapingbee_api_key, url if not params else f"{url}?{urlencode(params)}",
            scrapingbee_params,
        )
        label = "ScrapingBee"
    else:
        target = url
        query = params
        label = "HTTP"

    client_timeout = aiohttp.ClientTimeout(total=timeout)
    last_error: Optional[str] = None
    last_exception_type: Optional[str] = None
    start_time = time.perf_counter()

    for attempt in range(1, max_retries + 1):
        try:
            async with session.get(
                target,
                params=query,
                headers=headers,
                cookies=cookies,
                timeout=client_timeout,
            ) as resp:
                status = resp.status
                text = await resp.text(errors="replace")
                final_url = str(resp.url)

                # Transient errors → retry
                if status in TRANSIENT_STATUS_CODES:
                    last_error = f"{label} error: HTTP {status}"
                    if attempt == max_retries:
                        return _result(url, attempt, start_time, status, final_url,
                                       error=last_error,
                                       last_exception_type=last_exception_type)
                    log(
                        f"{last_error} on {url} (attempt {attempt}/{max_retries})",
                        context="scraping",
                    )
                    await _backoff(pacer, base_backoff, attempt)
                    continue

                if scrapingbee_api_key and status in SCRAPINGBEE_HARD_CODES:
                    last_error = f"{label} error: HTTP {status}"
                    return _result(url, attempt, start_time, status, final_url,
                                   error=last_error,
                                   last_exception_type=last_exception_type)

                # Soft 4xx or success: keep the body and do NOT set 'error'
                return _result(url, attempt, start_time, status, final_url,
                               page_text=text,
                               last_exception_type=last_exception_type)

        except asyncio.TimeoutError as exc:
            last_exception_type = type(exc).__name__
            last_error = f"{label} timeout after {timeout:.0f}s"
            if attempt == max_retries:
                return _result(url, attempt, start_time, error=last_error,
                               last_exception_type=last_exception_type)
            log(f"timeout on {url} (attempt {attempt}/{max_retries})", context="scraping")
            await _backoff(pacer, base_backoff, attempt)

        except aiohttp.ClientError as exc:
            # DNS/SSL/connection failures
            last_exception_type = type(exc).__name__
            last_error = f"{label} exception: {type(exc).__name__}: {exc}"
            if attempt == max_retries:
                return _result(url, attempt, start_time, error=last_error,
                               last_exception_type=last_exception_type)
            log(f"exception on {url} (attempt {attempt}/{max_retries}): {exc}", context="scraping")
            await _backoff(pacer, base_backoff, attempt)

    return _result(url, max_retries, start_time, error=last_error or "unknown_error",
                   last_exception_type=last_exception_type)


async def _backoff(pacer: Optional[RequestPacer], base_backoff: float, attempt: int) -> None:
    if pacer is not None:
        await pacer.backoff(attempt)
    else:
        await asyncio.sleep(base_backoff * attempt)


async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = 3,
    pacer: Optional[RequestPacer] = None,
) -> Any:
    """
    GET a JSON endpoint. Raises FetchError on transport failure, on any
    HTTP status >= 400, or when the body is not JSON.
    """
    res = await fetch_with_retries(
        session,
        url,
        params=params,
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        timeout=timeout,
        max_retries=max_retries,
        pacer=pacer,
    )
    if res["error"]:
        raise FetchError(res["error"])
    if res["status_code"] is not None and res["status_code"] >= 400:
        raise FetchError(f"HTTP {res['status_code']} from {url}")
    try:
        return json.loads(res["page_text"] or "null")
    except ValueError as e:
        raise FetchError(f"invalid JSON from {url}: {e}") from e


# ================================================================
# STORE API CLIENT
# ================================================================


class StoreApiClient:
    """
    Thin client for the public store API (storesearch + appdetails),
    pinned to one country / language.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: Settings,
        pacer: Optional[RequestPacer] = None,
        api_base: str = STEAM_STORE_API_BASE,
    ) -> None:
        self.session = session
        self.settings = settings
        self.pacer = pacer
        self.api_base = api_base.rstrip("/")

    async def search(self, term: str) -> List[Dict[str, Any]]:
        """
        Returns candidate dicts {"id", "name", "type"} in store order; empty
        list when nothing matched.
        """
        data = await fetch_json(
            self.session,
            f"{self.api_base}/storesearch/",
            params={
                "term": term,
                "l": self.settings.language,
                "cc": self.settings.country_code,
            },
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
            pacer=self.pacer,
        )
        items = (data or {}).get("items") or []
        out: List[Dict[str, Any]] = []
        for item in items:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            out.append({
                "id": str(item["id"]),
                "name": item.get("name") or "",
                "type": item.get("type") or "",
            })
        return out

    async def app_details(
        self,
        app_id: str,
        filters: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Returns the app's `data` object, or None when the store answers with
        success=false for this id.
        """
        params: Dict[str, Any] = {
            "appids": app_id,
            "cc": self.settings.country_code,
            "l": self.settings.language,
        }
        if filters:
            params["filters"] = filters

        data = await fetch_json(
            self.session,
            f"{self.api_base}/appdetails",
            params=params,
            timeout=timeout or self.settings.details_timeout,
            max_retries=self.settings.max_retries,
            pacer=self.pacer,
        )
        entry = (data or {}).get(str(app_id)) or {}
        if not entry.get("success"):
            return None
        return entry.get("data") or {}


# ================================================================
# PAGE FETCHER
# ================================================================


class PageFetcher:
    """
    Fetches rendered HTML. With ScrapingBee enabled the page is rendered by
    their headless browser (render_js + wait_for); otherwise a plain GET.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: Settings,
        pacer: Optional[RequestPacer] = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.pacer = pacer

    async def fetch(
        self,
        url: str,
        wait_for: Optional[str] = LISTING_ITEM_SELECTOR,
        cookies: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        api_key = self.settings.scrapingbee_api_key if self.settings.use_scrapingbee else None
        bee_params: Dict[str, Any] = {}
        if api_key:
            bee_params["render_js"] = "true" if wait_for else "false"
            if wait_for:
                bee_params["wait_for"] = wait_for
            if cookies:
                bee_params["cookies"] = ";".join(f"{k}={v}" for k, v in cookies.items())

        res = await fetch_with_retries(
            self.session,
            url,
            headers={"User-Agent": USER_AGENT},
            cookies=None if api_key else cookies,
            timeout=timeout or self.settings.listing_timeout,
            max_retries=self.settings.max_retries,
            pacer=self.pacer,
            scrapingbee_api_key=api_key,
            scrapingbee_params=bee_params,
        )
        if res["error"]:
            raise FetchError(res["error"])
        if res["status_code"] is not None and res["status_code"] >= 400:
            raise FetchError(f"HTTP {res['status_code']} from {url}")

        log(
            f"fetched {url} in {res['response_ms']:.0f}ms ({res['attempts']} attempt(s))",
            context="scraping",
        )
        return res["page_text"] or ""
