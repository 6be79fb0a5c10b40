# keydeal_selector/config.py
from __future__ import annotations

import os
import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Any, Optional

from .errors import SettingsError

# -------------------------
# Base project root
# -------------------------

# This file is: <project>/keydeal_selector/config.py
PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Optional settings file (ScrapingBee key, rates, pacing overrides)
DEFAULT_SETTINGS_PATH = PROJECT_ROOT / "keydeal_selector" / "settings.json"

# -------------------------
# Storefront endpoints
# -------------------------

STEAM_STORE_API_BASE = "https://store.steampowered.com/api"
STEAM_STORE_BASE = "https://store.steampowered.com"
EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/USD"

# Selector the listing page must contain before it counts as loaded
LISTING_ITEM_SELECTOR = ".product-item"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

CATALOG_BACKENDS = ("api", "store_page")

# -------------------------
# Defaults
# -------------------------

DEFAULT_EXCHANGE_RATES: Dict[str, float] = {
    "USD": 1320.0,
    "EUR": 1430.0,
    "GBP": 1670.0,
}

DEFAULT_MIN_DIFFERENCE = 5000


@dataclass(frozen=True)
class Settings:
    """
    Immutable runtime settings. Built once by load_settings() and handed to
    the service; nothing reads config state through globals after that.
    """

    cache_ttl: float = 3600.0
    report_cache_ttl: float = 0.0
    item_delay: float = 1.0
    attempt_delay: float = 0.5
    jitter: float = 0.0
    request_timeout: float = 10.0
    details_timeout: float = 15.0
    listing_timeout: float = 30.0
    max_retries: int = 3
    base_backoff: float = 1.5
    exchange_rates: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_EXCHANGE_RATES))
    catalog_backend: str = "api"
    scrapingbee_api_key: Optional[str] = None
    use_scrapingbee: bool = False
    country_code: str = "KR"
    language: str = "korean"
    default_min_difference: int = DEFAULT_MIN_DIFFERENCE
    log_root: Path = PROJECT_ROOT / "logs"

    def with_backend(self, backend: str) -> "Settings":
        if backend not in CATALOG_BACKENDS:
            raise SettingsError(f"Unknown catalog backend: {backend!r}")
        return replace(self, catalog_backend=backend)


_FLOAT_KEYS = (
    "cache_ttl",
    "report_cache_ttl",
    "item_delay",
    "attempt_delay",
    "jitter",
    "request_timeout",
    "details_timeout",
    "listing_timeout",
    "base_backoff",
)
_INT_KEYS = ("max_retries", "default_min_difference")
_STR_KEYS = ("catalog_backend", "scrapingbee_api_key", "country_code", "language")


def _coerce(raw: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}

    for key in _FLOAT_KEYS:
        if key in raw:
            try:
                value = float(raw[key])
            except (TypeError, ValueError):
                raise SettingsError(f"settings key {key!r} must be a number, got {raw[key]!r}")
            if value < 0:
                raise SettingsError(f"settings key {key!r} must not be negative")
            out[key] = value

    for key in _INT_KEYS:
        if key in raw:
            try:
                out[key] = int(raw[key])
            except (TypeError, ValueError):
                raise SettingsError(f"settings key {key!r} must be an integer, got {raw[key]!r}")

    for key in _STR_KEYS:
        if key in raw and raw[key] is not None:
            out[key] = str(raw[key]).strip()

    if "use_scrapingbee" in raw:
        out["use_scrapingbee"] = bool(raw["use_scrapingbee"])

    if "log_root" in raw and raw["log_root"]:
        out["log_root"] = Path(raw["log_root"])

    rates = raw.get("exchange_rates")
    if rates is not None:
        if not isinstance(rates, dict):
            raise SettingsError("settings key 'exchange_rates' must be an object")
        merged = dict(DEFAULT_EXCHANGE_RATES)
        for code, value in rates.items():
            try:
                merged[str(code).upper()] = float(value)
            except (TypeError, ValueError):
                raise SettingsError(f"exchange rate for {code!r} must be a number")
        out["exchange_rates"] = merged

    backend = out.get("catalog_backend")
    if backend is not None and backend not in CATALOG_BACKENDS:
        raise SettingsError(
            f"catalog_backend must be one of {CATALOG_BACKENDS}, got {backend!r}"
        )

    return out


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """
    Load settings from JSON, then apply environment overrides.

    The file is optional: with no file every default applies. Recognised
    environment variables:
      - KEYDEAL_SCRAPINGBEE_API_KEY  (also switches use_scrapingbee on)
      - KEYDEAL_CATALOG_BACKEND      ("api" or "store_page")
      - KEYDEAL_LOG_ROOT
    """
    if settings_path is None:
        settings_path = DEFAULT_SETTINGS_PATH

    settings_path = Path(settings_path)
    raw: Dict[str, Any] = {}

    if settings_path.exists():
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SettingsError(f"Could not read settings at {settings_path}: {e}") from e
        if not isinstance(raw, dict):
            raise SettingsError(f"settings.json at {settings_path} must be a JSON object")

    env_key = os.getenv("KEYDEAL_SCRAPINGBEE_API_KEY", "").strip()
    if env_key:
        raw["scrapingbee_api_key"] = env_key
        raw.setdefault("use_scrapingbee", True)

    env_backend = os.getenv("KEYDEAL_CATALOG_BACKEND", "").strip()
    if env_backend:
        raw["catalog_backend"] = env_backend

    env_log_root = os.getenv("KEYDEAL_LOG_ROOT", "").strip()
    if env_log_root:
        raw["log_root"] = env_log_root

    settings = Settings(**_coerce(raw))

    if settings.use_scrapingbee and not settings.scrapingbee_api_key:
        raise SettingsError("use_scrapingbee is on but no scrapingbee_api_key was given")

    return settings
