# keydeal_selector/catalog.py
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus

import aiohttp

from .cache import TTLCache
from .config import STEAM_STORE_BASE, Settings
from .errors import FetchError, MetadataUnavailable, SettingsError
from .logger import log
from .models import CatalogMatch, DescriptiveMetadata, MatchKind, PriceQuote
from .naming import build_search_variants
from .parsing import parse_store_app_page, parse_store_search_results
from .pricing import FREE_MARKERS, PriceParser, format_won, minor_to_whole
from .scraping import STORE_AGE_COOKIES, PageFetcher, StoreApiClient
from .throttle import RequestPacer

PRICE_FILTERS = "price_overview,name"
MAX_SCREENSHOTS = 4

# Errors that fail one lookup without aborting the caller
LOOKUP_ERRORS = (FetchError, aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError)


def pick_candidate(candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First game/dlc candidate, else whatever the store ranked first."""
    if not candidates:
        return None
    for cand in candidates:
        if MatchKind.from_raw(cand.get("type")) in (MatchKind.GAME, MatchKind.DLC):
            return cand
    return candidates[0]


class BaseCatalog:
    """
    Multi-stage name resolution shared by both catalog backends.

    Subclasses implement _search_term, fetch_price and _load_metadata; the
    variant walk, per-term cache-aside and inter-attempt pause live here.
    """

    backend = "base"

    def __init__(self, cache: TTLCache, pacer: RequestPacer) -> None:
        self.cache = cache
        self.pacer = pacer

    async def _search_term(self, term: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def resolve(self, name: str) -> Optional[CatalogMatch]:
        variants = build_search_variants(name)
        log(f"resolving {name!r} via {len(variants)} variant(s)", context="catalog")

        for stage, term in enumerate(variants, start=1):
            key = f"search:{term}"
            cached = self.cache.get(key)
            if cached is not None:
                log(f"search cache hit term={term!r} stage={stage}", context="catalog")
                return replace(cached, match_stage=stage)

            try:
                candidate = pick_candidate(await self._search_term(term))
            except LOOKUP_ERRORS as e:
                log(
                    f"search failed term={term!r} stage={stage}: {e}",
                    context="catalog",
                    extra={"term": term, "stage": stage, "error": str(e)},
                )
                candidate = None

            if candidate is not None:
                match = CatalogMatch(
                    external_id=str(candidate["id"]),
                    canonical_name=candidate.get("name") or "",
                    kind=MatchKind.from_raw(candidate.get("type")),
                    match_stage=stage,
                    matched_term=term,
                )
                self.cache.set(key, match)
                log(
                    f"resolved {name!r} -> {match.canonical_name!r} "
                    f"(id={match.external_id}, stage={stage}, term={term!r})",
                    context="catalog",
                )
                return match

            if stage < len(variants):
                await self.pacer.attempt_pause()

        log(f"no catalog match for {name!r}", context="catalog")
        return None

    async def fetch_price(self, external_id: str) -> Optional[PriceQuote]:
        raise NotImplementedError

    async def _load_metadata(self, external_id: str, source_title: str) -> DescriptiveMetadata:
        raise NotImplementedError

    async def fetch_metadata(self, external_id: str, source_title: str = "") -> DescriptiveMetadata:
        """
        Descriptive fields for the export. Never raises: on any failure the
        result is empty metadata titled `source_title`.
        """
        key = f"meta:{external_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            meta = await self._load_metadata(external_id, source_title)
        except (MetadataUnavailable,) + LOOKUP_ERRORS as e:
            log(f"metadata lookup failed id={external_id}: {e}", context="catalog")
            return DescriptiveMetadata.empty(source_title)

        self.cache.set(key, meta)
        return meta


# ================================================================
# STORE API BACKEND (canonical)
# ================================================================


class SteamApiCatalog(BaseCatalog):
    backend = "api"

    def __init__(
        self,
        client: StoreApiClient,
        cache: TTLCache,
        pacer: RequestPacer,
        price_timeout: float = 10.0,
        details_timeout: float = 15.0,
    ) -> None:
        super().__init__(cache, pacer)
        self.client = client
        self.price_timeout = price_timeout
        self.details_timeout = details_timeout

    async def _search_term(self, term: str) -> List[Dict[str, Any]]:
        return await self.client.search(term)

    async def fetch_price(self, external_id: str) -> Optional[PriceQuote]:
        key = f"price:{external_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            data = await self.client.app_details(
                external_id, filters=PRICE_FILTERS, timeout=self.price_timeout
            )
        except LOOKUP_ERRORS as e:
            log(f"price lookup failed id={external_id}: {e}", context="catalog")
            return None

        if data is None:
            log(f"store reported no data for id={external_id}", context="catalog")
            return None

        name = data.get("name") or ""
        overview = data.get("price_overview") or {}
        final_minor = overview.get("final") or 0

        if not final_minor:
            quote = PriceQuote.free(external_id, name)
        else:
            pct = int(overview.get("discount_percent") or 0)
            quote = PriceQuote(
                external_id=external_id,
                canonical_name=name,
                original_amount=minor_to_whole(overview.get("initial") or final_minor),
                final_amount=minor_to_whole(final_minor),
                discount_label=f"-{pct}%" if pct > 0 else None,
                currency=overview.get("currency") or "KRW",
            )

        self.cache.set(key, quote)
        log(
            f"price id={external_id} original={quote.original_amount} "
            f"final={format_won(final_minor)} free={quote.is_free}",
            context="catalog",
        )
        return quote

    async def _load_metadata(self, external_id: str, source_title: str) -> DescriptiveMetadata:
        data = await self.client.app_details(external_id, timeout=self.details_timeout)
        if not data:
            raise MetadataUnavailable(f"no app data for id={external_id}")

        name = data.get("name") or ""
        developers = data.get("developers") or []
        shots = [
            s.get("path_full")
            for s in (data.get("screenshots") or [])
            if isinstance(s, dict) and s.get("path_full")
        ][:MAX_SCREENSHOTS]

        return DescriptiveMetadata(
            title=name or source_title,
            header_image_url=data.get("header_image") or "",
            screenshot_urls=shots,
            developer_name=developers[0] if developers else "",
            localized_title=name if name and name != source_title else "",
        )


# ================================================================
# STORE HTML BACKEND (fallback)
# ================================================================


class SteamStorePageCatalog(BaseCatalog):
    """
    Resolves through the store's HTML search page and reads prices off the
    app page. Each variant takes the first search row only.
    """

    backend = "store_page"

    def __init__(
        self,
        fetcher: PageFetcher,
        cache: TTLCache,
        pacer: RequestPacer,
        parser: PriceParser,
        store_base: str = STEAM_STORE_BASE,
    ) -> None:
        super().__init__(cache, pacer)
        self.fetcher = fetcher
        self.parser = parser
        self.store_base = store_base.rstrip("/")

    async def _search_term(self, term: str) -> List[Dict[str, Any]]:
        html = await self.fetcher.fetch(
            f"{self.store_base}/search/?term={quote_plus(term)}", wait_for=None
        )
        return parse_store_search_results(html)[:1]

    async def _load_app_page(self, external_id: str) -> Optional[Dict[str, Any]]:
        key = f"page:{external_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        html = await self.fetcher.fetch(
            f"{self.store_base}/app/{external_id}/",
            wait_for=None,
            cookies=STORE_AGE_COOKIES,
        )
        page = parse_store_app_page(html)
        if page is not None:
            self.cache.set(key, page)
        return page

    async def fetch_price(self, external_id: str) -> Optional[PriceQuote]:
        key = f"price:{external_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            page = await self._load_app_page(external_id)
        except LOOKUP_ERRORS as e:
            log(f"app page failed id={external_id}: {e}", context="catalog")
            return None
        if page is None:
            return None

        final_text = page.get("final") or ""
        if any(marker in final_text.lower() for marker in FREE_MARKERS):
            quote = PriceQuote.free(external_id, page.get("name") or "")
        else:
            final_amount = self.parser.parse(final_text)
            original_amount = self.parser.parse(page.get("original")) or final_amount
            discount = page.get("discount") or None
            quote = PriceQuote(
                external_id=external_id,
                canonical_name=page.get("name") or "",
                original_amount=original_amount,
                final_amount=final_amount,
                discount_label=discount,
            )

        self.cache.set(key, quote)
        return quote

    async def _load_metadata(self, external_id: str, source_title: str) -> DescriptiveMetadata:
        page = await self._load_app_page(external_id)
        if page is None:
            raise MetadataUnavailable(f"no readable app page for id={external_id}")

        name = page.get("name") or ""
        return DescriptiveMetadata(
            title=name or source_title,
            header_image_url=page.get("header_image") or "",
            screenshot_urls=list(page.get("screenshots") or [])[:MAX_SCREENSHOTS],
            developer_name=page.get("developer") or "",
            localized_title=name if name and name != source_title else "",
        )


def build_catalog(
    settings: Settings,
    cache: TTLCache,
    pacer: RequestPacer,
    client: Optional[StoreApiClient] = None,
    fetcher: Optional[PageFetcher] = None,
    parser: Optional[PriceParser] = None,
) -> BaseCatalog:
    """Pick the catalog backend named by settings.catalog_backend."""
    if settings.catalog_backend == "api":
        if client is None:
            raise SettingsError("api catalog backend needs a StoreApiClient")
        return SteamApiCatalog(
            client,
            cache,
            pacer,
            price_timeout=settings.request_timeout,
            details_timeout=settings.details_timeout,
        )

    if settings.catalog_backend == "store_page":
        if fetcher is None:
            raise SettingsError("store_page catalog backend needs a PageFetcher")
        return SteamStorePageCatalog(fetcher, cache, pacer, parser or PriceParser())

    raise SettingsError(f"Unknown catalog backend: {settings.catalog_backend!r}")
