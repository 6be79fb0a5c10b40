# keydeal_selector/pricing.py
from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import aiohttp

from .config import DEFAULT_EXCHANGE_RATES, EXCHANGE_RATE_URL
from .logger import log

TARGET_SYMBOL = "₩"
TARGET_CURRENCY = "KRW"
FREE_LABEL = "Free"
FREE_MARKERS = ("free", "무료")

# Checked in this order after the target symbol
FOREIGN_SYMBOLS: Tuple[Tuple[str, str], ...] = (
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
)

# Cross rates used when only USD→KRW is fetched live
EUR_PER_USD_FACTOR = 1.08
GBP_PER_USD_FACTOR = 1.27

_LEADING_INT = re.compile(r"\d+")
_LEADING_FLOAT = re.compile(r"\d+(?:\.\d+)?|\.\d+")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class ExchangeRates:
    """
    One immutable snapshot of KRW-per-unit rates. A refresh produces a new
    snapshot; parsers holding the old one keep using it.
    """

    usd: float = DEFAULT_EXCHANGE_RATES["USD"]
    eur: float = DEFAULT_EXCHANGE_RATES["EUR"]
    gbp: float = DEFAULT_EXCHANGE_RATES["GBP"]
    source: str = "config"
    fetched_at: Optional[str] = None

    @classmethod
    def from_mapping(cls, rates: Dict[str, float], source: str = "config") -> "ExchangeRates":
        return cls(
            usd=float(rates.get("USD", DEFAULT_EXCHANGE_RATES["USD"])),
            eur=float(rates.get("EUR", DEFAULT_EXCHANGE_RATES["EUR"])),
            gbp=float(rates.get("GBP", DEFAULT_EXCHANGE_RATES["GBP"])),
            source=source,
        )

    def rate_for(self, currency: str) -> float:
        return {"USD": self.usd, "EUR": self.eur, "GBP": self.gbp}[currency]

    def as_dict(self) -> Dict[str, object]:
        return {
            "USD": self.usd,
            "EUR": self.eur,
            "GBP": self.gbp,
            "source": self.source,
            "fetchedAt": self.fetched_at,
        }


@dataclass(frozen=True)
class PriceParser:
    """
    Turns display prices like "$29.99" or "₩79,000" into whole won.

    0 means "could not parse" as well as "free"; callers that care about the
    difference must check for the free sentinel themselves.
    """

    rates: ExchangeRates = field(default_factory=ExchangeRates)

    def parse(self, price_text: Optional[str]) -> int:
        if not price_text:
            return 0

        text = str(price_text).strip()
        lower = text.lower()
        if lower in FREE_MARKERS or "free" in lower:
            return 0

        if TARGET_SYMBOL in text:
            cleaned = re.sub(r"[₩,\s]", "", text)
            m = _LEADING_INT.match(cleaned)
            return int(m.group(0)) if m else 0

        for symbol, currency in FOREIGN_SYMBOLS:
            if symbol in text:
                cleaned = re.sub(r"[,\s]", "", text.replace(symbol, ""))
                m = _LEADING_FLOAT.match(cleaned)
                if not m:
                    log(f"unparseable {currency} price text={text!r}", context="pricing")
                    return 0
                return round_half_up(float(m.group(0)) * self.rates.rate_for(currency))

        log(f"no known currency symbol in price text={text!r}", context="pricing")
        return 0


def minor_to_whole(minor_units: Optional[int]) -> int:
    """Steam reports KRW in hundredths; the pipeline works in whole won."""
    if not minor_units:
        return 0
    return round_half_up(minor_units / 100)


def format_won(minor_units: Optional[int]) -> str:
    if not minor_units:
        return FREE_LABEL
    return f"{TARGET_SYMBOL}{minor_to_whole(minor_units):,}"


async def fetch_exchange_rates(
    session: aiohttp.ClientSession,
    current: ExchangeRates,
    url: str = EXCHANGE_RATE_URL,
    timeout: float = 10.0,
) -> ExchangeRates:
    """
    Fetch a live USD→KRW rate and derive EUR/GBP from fixed cross rates.

    Returns a fresh snapshot, or `current` unchanged when the fetch fails.
    """
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        log(f"exchange rate refresh failed: {e!r}", context="pricing")
        return current

    krw = (data or {}).get("rates", {}).get(TARGET_CURRENCY)
    if not isinstance(krw, (int, float)) or krw <= 0:
        log(f"exchange rate payload had no usable KRW rate: {krw!r}", context="pricing")
        return current

    usd = float(round_half_up(krw))
    snapshot = ExchangeRates(
        usd=usd,
        eur=usd * EUR_PER_USD_FACTOR,
        gbp=usd * GBP_PER_USD_FACTOR,
        source="live",
        fetched_at=datetime.now(timezone.utc).isoformat(),
    )
    log(f"exchange rate refreshed: 1 USD = {usd:.0f} KRW", context="pricing")
    return snapshot
