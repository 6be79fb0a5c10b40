# keydeal_selector/source.py
from __future__ import annotations

import time
from typing import List, Optional

from .cache import TTLCache
from .config import LISTING_ITEM_SELECTOR
from .errors import FetchError, SourceUnavailable
from .logger import log
from .models import ListedProduct
from .naming import clean_title
from .parsing import has_listing_markup, parse_listing_products


class ListingSource:
    """
    Source A: crawls one listing page into ListedProduct records.

    Results are cached per listing URL, so repeated comparisons inside the
    cache TTL reuse the same product ids.
    """

    def __init__(self, cache: TTLCache, fetcher, ttl: Optional[float] = None) -> None:
        self.cache = cache
        self.fetcher = fetcher
        self.ttl = ttl

    @staticmethod
    def cache_key(listing_url: str) -> str:
        return f"listing:{listing_url}"

    async def list_products(self, listing_url: str) -> List[ListedProduct]:
        key = self.cache_key(listing_url)
        cached = self.cache.get(key)
        if cached is not None:
            log(f"listing cache hit url={listing_url} products={len(cached)}", context="source")
            return cached

        try:
            html = await self.fetcher.fetch(listing_url, wait_for=LISTING_ITEM_SELECTOR)
        except FetchError as e:
            raise SourceUnavailable(f"Could not load listing page {listing_url}: {e}") from e

        if not has_listing_markup(html):
            raise SourceUnavailable(
                f"Listing page {listing_url} has no {LISTING_ITEM_SELECTOR} cards"
            )

        stamp = int(time.time() * 1000)
        products = []
        for index, raw in enumerate(parse_listing_products(html, base_url=listing_url)):
            products.append(
                ListedProduct(
                    id=f"game_{stamp}_{index}",
                    raw_title=raw["title"],
                    normalized_title=clean_title(raw["title"]),
                    price_text=raw["price_text"],
                    detail_url=raw["link"],
                )
            )

        self.cache.set(key, products, self.ttl)
        log(
            f"listing crawled url={listing_url} products={len(products)}",
            context="source",
            extra={"url": listing_url, "count": len(products)},
        )
        return products
