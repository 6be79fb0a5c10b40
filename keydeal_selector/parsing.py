# keydeal_selector/parsing.py
from __future__ import annotations

import re
from typing import Dict, Any, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .config import LISTING_ITEM_SELECTOR
from .logger import log

MAX_SCREENSHOTS = 4

_APP_ID_RE = re.compile(r"/app/(\d+)")


def _text(node) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


# ================================================================
# LISTING PAGE (source A)
# ================================================================


def has_listing_markup(html: str) -> bool:
    soup = BeautifulSoup(html or "", "html.parser")
    return soup.select_one(LISTING_ITEM_SELECTOR) is not None


def parse_listing_products(html: str, base_url: str = "") -> List[Dict[str, str]]:
    """
    Extract {"title", "price_text", "link"} from every product card.

    Cards missing a title or a price are skipped; links are made absolute
    against `base_url`.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    cards = soup.select(LISTING_ITEM_SELECTOR)

    out: List[Dict[str, str]] = []
    skipped = 0
    for card in cards:
        link_el = card.select_one(".product-item-link")
        price_el = card.select_one(".price")

        title = _text(link_el)
        price_text = _text(price_el)
        if not title or not price_text:
            skipped += 1
            continue

        href = (link_el.get("href") or "").strip()
        out.append({
            "title": title,
            "price_text": price_text,
            "link": urljoin(base_url, href) if href else "",
        })

    log(
        f"listing cards={len(cards)} parsed={len(out)} skipped={skipped}",
        context="parsing",
    )
    return out


# ================================================================
# STORE HTML PAGES (source B fallback backend)
# ================================================================


def parse_store_search_results(html: str) -> List[Dict[str, str]]:
    """
    Rows of the store's HTML search page, in page order, as
    {"id", "name", "url", "type"}. Only /app/ rows carry a usable id.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    rows = soup.select("#search_resultsRows a")

    out: List[Dict[str, str]] = []
    for row in rows:
        href = (row.get("href") or "").strip()
        app_id = (row.get("data-ds-appid") or "").split(",")[0].strip()
        if not app_id:
            m = _APP_ID_RE.search(href)
            app_id = m.group(1) if m else ""
        if not app_id:
            continue

        out.append({
            "id": app_id,
            "name": _text(row.select_one(".title")),
            "url": href,
            "type": "game" if "/app/" in href else "other",
        })

    log(f"store search rows={len(rows)} usable={len(out)}", context="parsing")
    return out


def parse_store_app_page(html: str) -> Optional[Dict[str, Any]]:
    """
    Price and descriptive fields from a store app page.

    Returns None when the page is an age gate or carries no price at all.
    The result has "original" / "final" display strings, an optional
    "discount" label, and the metadata fields used by the export.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    if soup.select_one("#ageYear") is not None:
        log("store app page is behind the age gate", context="parsing")
        return None

    original = final = discount = None
    discount_original = soup.select_one(".discount_original_price")
    discount_final = soup.select_one(".discount_final_price")
    if discount_original is not None and discount_final is not None:
        original = _text(discount_original)
        final = _text(discount_final)
        pct = soup.select_one(".discount_pct")
        if pct is not None:
            discount = _text(pct)
    else:
        price_el = soup.select_one(".game_purchase_price.price, .game_area_purchase_game .price")
        if price_el is not None:
            final = _text(price_el)
            original = final

    if not original and not final:
        log("store app page has no price block", context="parsing")
        return None

    header = soup.select_one("img.game_header_image_full")
    developer = soup.select_one("#developers_list a")
    shots = [
        a.get("href")
        for a in soup.select("a.highlight_screenshot_link")
        if a.get("href")
    ][:MAX_SCREENSHOTS]

    return {
        "name": _text(soup.select_one(".apphub_AppName")),
        "original": original,
        "final": final,
        "discount": discount,
        "header_image": (header.get("src") or "") if header is not None else "",
        "developer": _text(developer),
        "screenshots": shots,
    }


def app_id_from_url(url: str) -> Optional[str]:
    m = _APP_ID_RE.search(url or "")
    return m.group(1) if m else None
