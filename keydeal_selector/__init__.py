# keydeal_selector/__init__.py
"""
Key Deal Selector: async CD-key vs Steam price comparison.

Crawl a CD-key listing page → resolve each title on the Steam store →
normalize prices to KRW → rank by savings → export marketplace XLSX sheets.
"""

__all__ = [
    "config",
    "errors",
    "models",
    "pricing",
    "naming",
    "cache",
    "throttle",
    "scraping",
    "parsing",
    "source",
    "catalog",
    "workbook",
    "orchestrator",
]
