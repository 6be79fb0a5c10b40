# keydeal_selector/naming.py
from __future__ import annotations

import re
from typing import List, Pattern

from .logger import log

MIN_CLEAN_LENGTH = 3
MIN_RETENTION_RATIO = 0.3

# Trailing storefront noise, stripped in order. Each rule sees the output of
# the previous one, so the compound PC-DLC and PC/Mac forms must come first.
# A bare trailing "Game" is part of many real titles and is left alone.
_SUFFIX_PATTERNS = [
    # PC-DLC
    r"\s+PC-DLC\s*$",
    r"\s+\(PC-DLC\)\s*$",
    r"\s+-\s*PC-DLC\s*$",
    r"\s+PC - DLC\s*$",
    # PC/Mac
    r"\s+\(PC/Mac\)\s*$",
    r"\s+-\s*PC/Mac\s*$",
    r"\s+\[PC/Mac\]\s*$",
    r"\s+PC/Mac\s*-?\s*$",
    r"\s+\(PC/Mac\)\s*-?\s*$",
    # PC
    r"\s+PC\s*$",
    r"\s+\(PC\)\s*$",
    r"\s+-\s*PC\s*$",
    # DLC
    r"\s+DLC\s*$",
    r"\s+\(DLC\)\s*$",
    r"\s+-\s*DLC\s*$",
    # Steam
    r"\s+Steam\s*$",
    r"\s+\(Steam\)\s*$",
    r"\s+-\s*Steam\s*$",
    r"\s+Steam\s+Key\s*$",
    r"\s+Steam\s+Code\s*$",
    # Key / Code
    r"\s+Key\s*$",
    r"\s+Code\s*$",
    r"\s+\(Key\)\s*$",
    r"\s+\(Code\)\s*$",
    # Digital
    r"\s+Digital\s*$",
    r"\s+\(Digital\)\s*$",
    r"\s+Digital\s+Download\s*$",
    r"\s+Download\s*$",
    # Region
    r"\s+Global\s*$",
    r"\s+\[Global\]\s*$",
    r"\s+\(Global\)\s*$",
    r"\s+Worldwide\s*$",
    r"\s+\[Worldwide\]\s*$",
    r"\s+EU\s*$",
    r"\s+US\s*$",
    r"\s+UK\s*$",
    r"\s+ROW\s*$",
    # Misc
    r"\s+Edition\s*$",
    r"\s+\(Game\)\s*$",
]

SUFFIX_RULES: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in _SUFFIX_PATTERNS]

_PLATFORM_TAIL = re.compile(r"\s+(PC|Mac|Linux).*$", re.IGNORECASE)
_EXPANSION_TAIL = re.compile(r"\s+(DLC|Expansion).*$", re.IGNORECASE)
_COLON_TAIL = re.compile(r"\s*:\s*.*$")
_DASH_TAIL = re.compile(r"\s*-\s*.*$")
_UNSAFE_CHARS = re.compile(r'[\\*?"<>|:/]')


def clean_title(raw_title: str) -> str:
    """
    Strip platform / DLC / region / storefront suffixes from a listing title.

    Falls back to the untouched title when stripping leaves fewer than
    MIN_CLEAN_LENGTH characters or keeps less than MIN_RETENTION_RATIO of it.
    """
    if not raw_title:
        return raw_title

    cleaned = raw_title.strip()
    # until stable: "Hades PC Global" only loses "PC" on the second pass
    previous = None
    while cleaned != previous:
        previous = cleaned
        for rule in SUFFIX_RULES:
            cleaned = rule.sub("", cleaned).strip()

    retention = len(cleaned) / len(raw_title)
    if len(cleaned) < MIN_CLEAN_LENGTH or retention < MIN_RETENTION_RATIO:
        log(
            f"over-stripped {raw_title!r} -> {cleaned!r} ({retention:.0%}); keeping original",
            context="naming",
        )
        return raw_title

    if cleaned != raw_title:
        log(f"cleaned {raw_title!r} -> {cleaned!r}", context="naming")
    return cleaned


def build_search_variants(name: str) -> List[str]:
    """
    Ordered, de-duplicated catalog search terms for one listing title,
    from most to least specific.
    """
    words = name.split(" ")
    candidates = [
        name,
        clean_title(name),
        _PLATFORM_TAIL.sub("", name),
        _EXPANSION_TAIL.sub("", name),
        _COLON_TAIL.sub("", name),
        _DASH_TAIL.sub("", name),
        " ".join(words[:-1]),
        " ".join(words[:-2]),
    ]

    variants: List[str] = []
    for term in candidates:
        term = (term or "").strip()
        if len(term) < MIN_CLEAN_LENGTH or term in variants:
            continue
        variants.append(term)
    return variants


def sanitize_product_name(name: str) -> str:
    """Drop characters the marketplace rejects in product names."""
    return _UNSAFE_CHARS.sub("", name or "").strip()
