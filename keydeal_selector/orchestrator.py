# keydeal_selector/orchestrator.py
from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Optional, Iterable, Dict, Any, List, Union

import aiohttp
import pandas as pd

from .cache import TTLCache
from .catalog import BaseCatalog, build_catalog
from .config import (
    CATALOG_BACKENDS,
    DEFAULT_SETTINGS_PATH,
    USER_AGENT,
    Settings,
    load_settings,
)
from .errors import MatchNotFound, QuoteUnavailable, SourceUnavailable
from .logger import export_logs_as_jsonl, log, set_log_root, set_run_mode
from .models import (
    CatalogMatch,
    ComparisonReport,
    ComparisonResult,
    DescriptiveMetadata,
    ListedProduct,
    MatchKind,
    PriceQuote,
    UnmatchedProduct,
)
from .naming import clean_title
from .parsing import app_id_from_url
from .pricing import ExchangeRates, PriceParser, fetch_exchange_rates, round_half_up
from .scraping import PageFetcher, StoreApiClient
from .source import ListingSource
from .throttle import RequestPacer
from .workbook import (
    MANAGEMENT_SHEET_NAME,
    STORE_SHEET_NAME,
    build_management_rows,
    build_store_rows,
    report_to_frame,
    save_export_workbook,
    unmatched_to_frame,
)

REASON_NOT_FOUND = "not found in catalog"
REASON_NO_PRICE = "price unavailable"
REASON_FREE = "free on catalog"
REASON_ZERO_PRICE = "zero reference price"

MANUAL_MATCH_TERM = "manual"


# -------------------------------------------------------------------
# Comparison engine
# -------------------------------------------------------------------


class ComparisonEngine:
    """
    Walks one listing sequentially: resolve → quote → compare, pacing
    between products. Only SourceUnavailable escapes compare(); every
    per-product failure is recorded in report.unmatched.
    """

    def __init__(
        self,
        source: ListingSource,
        catalog: BaseCatalog,
        parser: PriceParser,
        pacer: RequestPacer,
    ) -> None:
        self.source = source
        self.catalog = catalog
        self.parser = parser
        self.pacer = pacer

    def build_result(
        self,
        product: ListedProduct,
        match: CatalogMatch,
        quote: PriceQuote,
        parser: Optional[PriceParser] = None,
    ) -> Union[ComparisonResult, UnmatchedProduct]:
        if quote.is_free:
            return UnmatchedProduct(product, REASON_FREE)
        if quote.original_amount <= 0:
            return UnmatchedProduct(product, REASON_ZERO_PRICE)

        source_a_price = (parser or self.parser).parse(product.price_text)
        savings = quote.original_amount - source_a_price
        percent = round_half_up(savings / quote.original_amount * 100)

        if not match.canonical_name and quote.canonical_name:
            match = replace(match, canonical_name=quote.canonical_name)

        return ComparisonResult(
            product=product,
            match=match,
            source_a_price=source_a_price,
            source_b_original_price=quote.original_amount,
            source_b_final_price=quote.final_amount,
            savings=savings,
            savings_percent=percent,
            discount_label=quote.discount_label,
        )

    async def evaluate(
        self,
        product: ListedProduct,
        parser: Optional[PriceParser] = None,
    ) -> Union[ComparisonResult, UnmatchedProduct]:
        match = await self.catalog.resolve(product.normalized_title)
        if match is None:
            raise MatchNotFound(product.normalized_title)

        quote = await self.catalog.fetch_price(match.external_id)
        if quote is None:
            raise QuoteUnavailable(match.external_id)

        return self.build_result(product, match, quote, parser)

    async def compare(
        self,
        listing_url: str,
        min_difference: int = 5000,
        limit: Optional[int] = None,
    ) -> ComparisonReport:
        # one rate snapshot per run, even if apply_rates() swaps the parser mid-way
        parser = self.parser
        products = await self.source.list_products(listing_url)
        if limit is not None:
            products = products[:limit]

        report = ComparisonReport(total_count=len(products))
        log(
            f"comparing {len(products)} products (min_difference={min_difference})",
            context="orchestrator",
            extra={"url": listing_url},
        )

        for i, product in enumerate(products):
            try:
                outcome = await self.evaluate(product, parser)
            except MatchNotFound:
                outcome = UnmatchedProduct(product, REASON_NOT_FOUND)
            except QuoteUnavailable:
                outcome = UnmatchedProduct(product, REASON_NO_PRICE)
            except Exception as e:
                log(
                    f"comparison failed for {product.normalized_title!r}: {e!r}",
                    context="orchestrator",
                )
                outcome = UnmatchedProduct(product, f"error: {e}")

            if isinstance(outcome, UnmatchedProduct):
                report.unmatched.append(outcome)
                log(f"{product.normalized_title!r}: {outcome.reason}", context="orchestrator")
            elif outcome.savings >= min_difference:
                report.results.append(outcome)
                log(
                    f"{product.normalized_title!r}: savings={outcome.savings} "
                    f"({outcome.savings_percent}%)",
                    context="orchestrator",
                )
            else:
                log(
                    f"{product.normalized_title!r}: savings={outcome.savings} below threshold",
                    context="orchestrator",
                )

            if i < len(products) - 1:
                await self.pacer.pause()

        # sort() is stable: ties keep listing order
        report.results.sort(key=lambda r: r.savings, reverse=True)
        return report

    async def refresh_product(
        self,
        product: ListedProduct,
        external_id: str,
    ) -> Optional[ComparisonResult]:
        """
        Recompute one product against a hand-picked catalog id. A store page
        URL is accepted too; its app id is used.
        """
        app_id = app_id_from_url(str(external_id)) or str(external_id).strip()
        match = CatalogMatch(
            external_id=app_id,
            canonical_name="",
            kind=MatchKind.OTHER,
            match_stage=0,
            matched_term=MANUAL_MATCH_TERM,
        )
        quote = await self.catalog.fetch_price(match.external_id)
        if quote is None:
            return None
        outcome = self.build_result(product, match, quote)
        if isinstance(outcome, UnmatchedProduct):
            log(f"manual refresh id={app_id}: {outcome.reason}", context="orchestrator")
            return None
        return outcome


# -------------------------------------------------------------------
# Service object
# -------------------------------------------------------------------


class PriceComparisonService:
    """
    Owns the HTTP session, cache, pacer and current rate snapshot, and
    exposes the operations an HTTP layer or the CLI calls.

        async with PriceComparisonService(settings) as svc:
            await svc.compare(url)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        cache: Optional[TTLCache] = None,
        pacer: Optional[RequestPacer] = None,
        source: Optional[ListingSource] = None,
        catalog: Optional[BaseCatalog] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.session = session
        self._owns_session = session is None
        self.cache = cache or TTLCache(default_ttl=self.settings.cache_ttl)
        self.pacer = pacer or RequestPacer(
            item_delay=self.settings.item_delay,
            attempt_delay=self.settings.attempt_delay,
            jitter=self.settings.jitter,
            base_backoff=self.settings.base_backoff,
        )
        self.rates = ExchangeRates.from_mapping(self.settings.exchange_rates)
        self.parser = PriceParser(self.rates)
        self.source = source
        self.catalog = catalog
        self.engine: Optional[ComparisonEngine] = None
        self.last_report: Optional[ComparisonReport] = None

        if self.source is not None and self.catalog is not None:
            self.engine = ComparisonEngine(self.source, self.catalog, self.parser, self.pacer)

    async def start(self) -> "PriceComparisonService":
        set_log_root(self.settings.log_root)

        if self.source is None or self.catalog is None:
            if self.session is None:
                self.session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
                self._owns_session = True

            fetcher = PageFetcher(self.session, self.settings, self.pacer)
            if self.source is None:
                self.source = ListingSource(self.cache, fetcher)
            if self.catalog is None:
                self.catalog = build_catalog(
                    self.settings,
                    self.cache,
                    self.pacer,
                    client=StoreApiClient(self.session, self.settings, self.pacer),
                    fetcher=fetcher,
                    parser=self.parser,
                )

        self.engine = ComparisonEngine(self.source, self.catalog, self.parser, self.pacer)
        log(
            f"service started backend={self.settings.catalog_backend}",
            context="orchestrator",
        )
        return self

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "PriceComparisonService":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_engine(self) -> ComparisonEngine:
        if self.engine is None:
            raise RuntimeError("PriceComparisonService not started. Call start() first.")
        return self.engine

    # -------------------------
    # Comparison
    # -------------------------

    async def compare_report(
        self,
        listing_url: str,
        min_difference: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> ComparisonReport:
        engine = self._require_engine()
        if min_difference is None:
            min_difference = self.settings.default_min_difference

        rates = self.rates
        report_key = (
            f"report:{listing_url}:{min_difference}:{limit}"
            f":{rates.usd}:{rates.eur}:{rates.gbp}"
        )
        if self.settings.report_cache_ttl > 0:
            cached = self.cache.get(report_key)
            if cached is not None:
                log(f"report cache hit url={listing_url}", context="orchestrator")
                self.last_report = cached
                return cached

        report = await engine.compare(listing_url, min_difference=min_difference, limit=limit)

        if self.settings.report_cache_ttl > 0:
            self.cache.set(report_key, report, self.settings.report_cache_ttl)
        self.last_report = report
        return report

    async def compare(
        self,
        listing_url: str,
        min_difference: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            report = await self.compare_report(listing_url, min_difference, limit)
        except SourceUnavailable as e:
            log(f"listing unavailable: {e}", context="orchestrator")
            return {"error": str(e)}
        return report.to_response()

    async def refresh_product(self, product: ListedProduct, external_id: str) -> Dict[str, Any]:
        result = await self._require_engine().refresh_product(product, external_id)
        if result is None:
            return {"success": False, "error": f"No usable price for app {external_id}"}
        return {"success": True, "game": result.to_dict()}

    # -------------------------
    # Maintenance
    # -------------------------

    def cache_flush(self) -> Dict[str, Any]:
        self.cache.flush_all()
        log("cache flushed", context="orchestrator")
        return {"success": True}

    def status(self) -> Dict[str, Any]:
        return {
            "cacheKeyCount": self.cache.key_count(),
            "cacheStats": self.cache.stats(),
            "exchangeRates": self.rates.as_dict(),
            "catalogBackend": self.settings.catalog_backend,
        }

    def clean_name(self, title: str) -> Dict[str, Any]:
        cleaned = clean_title(title)
        return {
            "success": True,
            "original": title,
            "cleaned": cleaned,
            "changed": cleaned != title,
        }

    def apply_rates(self, rates: ExchangeRates) -> None:
        """Swap in a new rate snapshot. A comparison already running keeps its own."""
        self.rates = rates
        self.parser = PriceParser(rates)
        if self.engine is not None:
            self.engine.parser = self.parser
        if self.catalog is not None and hasattr(self.catalog, "parser"):
            self.catalog.parser = self.parser

    async def refresh_rates(self) -> Dict[str, Any]:
        if self.session is None:
            raise RuntimeError("PriceComparisonService not started. Call start() first.")
        fresh = await fetch_exchange_rates(
            self.session, self.rates, timeout=self.settings.request_timeout
        )
        if fresh is self.rates:
            return {"success": False, "rate": self.rates.usd}
        self.apply_rates(fresh)
        return {"success": True, "rate": fresh.usd}

    # -------------------------
    # Exports
    # -------------------------

    async def _metadata_for(self, result: ComparisonResult) -> Optional[DescriptiveMetadata]:
        title = result.product.normalized_title
        try:
            meta = await self.catalog.fetch_metadata(result.match.external_id, title)
        except Exception as e:
            log(f"metadata failed for {title!r}: {e!r}", context="orchestrator")
            return None
        return meta

    @staticmethod
    def _results_of(report_or_results: Union[ComparisonReport, Iterable[ComparisonResult]]) -> List[ComparisonResult]:
        if isinstance(report_or_results, ComparisonReport):
            return list(report_or_results.results)
        return list(report_or_results)

    async def export_store_workbook(
        self,
        report_or_results: Union[ComparisonReport, Iterable[ComparisonResult]],
        path: Union[Path, str],
        sell_prices: Optional[Dict[str, int]] = None,
    ) -> Path:
        self._require_engine()
        results = self._results_of(report_or_results)
        items = []
        for result in results:
            items.append((result, await self._metadata_for(result)))

        rows = build_store_rows(items, sell_prices)
        return await asyncio.to_thread(save_export_workbook, path, STORE_SHEET_NAME, rows)

    async def export_management_workbook(
        self,
        report_or_results: Union[ComparisonReport, Iterable[ComparisonResult]],
        path: Union[Path, str],
        sell_prices: Optional[Dict[str, int]] = None,
    ) -> Path:
        self._require_engine()
        results = self._results_of(report_or_results)
        items = []
        for result in results:
            meta = await self._metadata_for(result)
            items.append((result, meta.localized_title if meta else ""))

        rows = build_management_rows(items, sell_prices)
        return await asyncio.to_thread(save_export_workbook, path, MANAGEMENT_SHEET_NAME, rows)


# -------------------------------------------------------------------
# CLI pipeline
# -------------------------------------------------------------------


async def run_comparison_async(
    settings: Settings,
    listing_url: str,
    min_difference: Optional[int] = None,
    limit: Optional[int] = None,
    export_path: Optional[Path] = None,
    management_path: Optional[Path] = None,
    refresh_rates: bool = True,
) -> Dict[str, Any]:
    """
    1) Start the service (session, cache, catalog backend).
    2) Optionally refresh the USD→KRW rate.
    3) Compare the listing against the catalog.
    4) Optionally write the store / management exports.
    """
    async with PriceComparisonService(settings) as svc:
        if refresh_rates:
            rate = await svc.refresh_rates()
            print(f"[orchestrator] USD→KRW rate: {rate['rate']:.0f} (live={rate['success']})")

        print(f"[orchestrator] Comparing {listing_url} via {settings.catalog_backend} backend")
        try:
            report = await svc.compare_report(listing_url, min_difference, limit)
        except SourceUnavailable as e:
            print(f"[orchestrator] Listing unavailable: {e}")
            return {"error": str(e)}

        meta: Dict[str, Any] = {
            "total": report.total_count,
            "matched": len(report.results),
            "unmatched": len(report.unmatched),
            "report": report,
        }

        if export_path is not None:
            meta["store_export"] = str(await svc.export_store_workbook(report, export_path))
            print(f"[orchestrator] Store sheet written → {meta['store_export']}")

        if management_path is not None:
            meta["management_export"] = str(
                await svc.export_management_workbook(report, management_path)
            )
            print(f"[orchestrator] Management sheet written → {meta['management_export']}")

        meta["status"] = svc.status()
        return meta


def build_cli_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Key deal selector.\n"
            "Compares a CD-key listing page against the Steam store and ranks\n"
            "products by how much cheaper they are than the store price."
        )
    )

    p.add_argument("--url", type=str, default=None, help="Listing page URL to compare.")
    p.add_argument(
        "--min-difference",
        type=int,
        default=None,
        help="Minimum savings in KRW for a product to be reported (default from settings).",
    )
    p.add_argument(
        "--settings-path",
        type=str,
        default=str(DEFAULT_SETTINGS_PATH),
        help="Path to settings.json",
    )
    p.add_argument("--export", type=str, default=None, help="Write the store upload sheet here.")
    p.add_argument(
        "--management-export",
        type=str,
        default=None,
        help="Write the management sheet here.",
    )
    p.add_argument(
        "--backend",
        choices=CATALOG_BACKENDS,
        default=None,
        help="Catalog backend override.",
    )
    p.add_argument(
        "--clean-name",
        type=str,
        default=None,
        help="Only print the cleaned form of this title and exit.",
    )
    p.add_argument("--limit", type=int, default=None, help="Compare only the first N products.")
    p.add_argument(
        "--no-rate-refresh",
        action="store_true",
        help="Skip the live exchange-rate fetch and use configured rates.",
    )
    p.add_argument("--debug", action="store_true", help="Echo every log event to stdout.")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_cli_parser()
    args = parser.parse_args(argv)

    if args.clean_name is not None:
        cleaned = clean_title(args.clean_name)
        print(f"{args.clean_name!r} → {cleaned!r}")
        return

    if not args.url:
        parser.error("--url is required unless --clean-name is given")

    if args.debug:
        set_run_mode("debug")
    elif args.limit is not None:
        set_run_mode("test")
    else:
        set_run_mode("prod")

    settings = load_settings(Path(args.settings_path))
    if args.backend:
        settings = settings.with_backend(args.backend)

    meta = asyncio.run(
        run_comparison_async(
            settings=settings,
            listing_url=args.url,
            min_difference=args.min_difference,
            limit=args.limit,
            export_path=Path(args.export) if args.export else None,
            management_path=Path(args.management_export) if args.management_export else None,
            refresh_rates=not args.no_rate_refresh,
        )
    )

    log_path = export_logs_as_jsonl()
    print(f"[orchestrator] Logs written → {log_path}")

    if "error" in meta:
        raise SystemExit(1)

    report = meta.pop("report")
    print("\n=== Ranked results ===")
    with pd.option_context("display.max_columns", None, "display.width", 220):
        print(report_to_frame(report))
        if report.unmatched:
            print("\n=== Not matched ===")
            print(unmatched_to_frame(report))

    print("\n=== Run metadata ===")
    for k, v in meta.items():
        print(f"{k}: {v}")


if __name__ == "__main__":
    main()
