# keydeal_selector/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MatchKind(str, Enum):
    """Catalog entry type as declared by the store search."""

    GAME = "game"
    DLC = "dlc"
    OTHER = "other"

    @classmethod
    def from_raw(cls, value: Any) -> "MatchKind":
        raw = str(value or "").strip().lower()
        if raw == "game":
            return cls.GAME
        if raw == "dlc":
            return cls.DLC
        return cls.OTHER


@dataclass(frozen=True)
class ListedProduct:
    """One product card scraped from the listing storefront."""

    id: str
    raw_title: str
    normalized_title: str
    price_text: str
    detail_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.normalized_title,
            "originalName": self.raw_title,
            "price": self.price_text,
            "url": self.detail_url,
        }


@dataclass(frozen=True)
class CatalogMatch:
    external_id: str
    canonical_name: str
    kind: MatchKind
    match_stage: int
    matched_term: str = ""


@dataclass(frozen=True)
class PriceQuote:
    """
    Catalog price for a resolved app, in whole units of `currency`.

    `is_free` marks the free sentinel: the catalog reported no price at all,
    and the item is excluded from savings comparison.
    """

    external_id: str
    canonical_name: str
    original_amount: int
    final_amount: int
    discount_label: Optional[str] = None
    currency: str = "KRW"
    is_free: bool = False

    @classmethod
    def free(cls, external_id: str, canonical_name: str, currency: str = "KRW") -> "PriceQuote":
        return cls(
            external_id=external_id,
            canonical_name=canonical_name,
            original_amount=0,
            final_amount=0,
            currency=currency,
            is_free=True,
        )


@dataclass(frozen=True)
class DescriptiveMetadata:
    title: str = ""
    header_image_url: str = ""
    screenshot_urls: List[str] = field(default_factory=list)
    developer_name: str = ""
    localized_title: str = ""

    @classmethod
    def empty(cls, title: str = "") -> "DescriptiveMetadata":
        return cls(title=title)


@dataclass(frozen=True)
class ComparisonResult:
    product: ListedProduct
    match: CatalogMatch
    source_a_price: int
    source_b_original_price: int
    source_b_final_price: int
    savings: int
    savings_percent: int
    discount_label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.product.id,
            "name": self.product.normalized_title,
            "originalName": self.product.raw_title,
            "exactName": self.match.canonical_name or self.product.normalized_title,
            "cdkeysPrice": self.source_a_price,
            "cdkeysUrl": self.product.detail_url,
            "steamOriginalPrice": self.source_b_original_price,
            "steamFinalPrice": self.source_b_final_price,
            "steamDiscount": self.discount_label,
            "savings": self.savings,
            "savingsPercent": self.savings_percent,
            "steamAppId": self.match.external_id,
            "matchStage": self.match.match_stage,
            "matchedTerm": self.match.matched_term,
            "steamFound": True,
        }


@dataclass(frozen=True)
class UnmatchedProduct:
    product: ListedProduct
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        out = self.product.to_dict()
        out["steamFound"] = False
        out["reason"] = self.reason
        return out


@dataclass
class ComparisonReport:
    total_count: int = 0
    results: List[ComparisonResult] = field(default_factory=list)
    unmatched: List[UnmatchedProduct] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "totalGames": self.total_count,
            "discountedGames": len(self.results),
            "notFoundGames": len(self.unmatched),
            "games": [r.to_dict() for r in self.results],
            "notFound": [u.to_dict() for u in self.unmatched],
        }
