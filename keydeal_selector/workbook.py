# keydeal_selector/workbook.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import openpyxl
import pandas as pd

from .logger import log
from .models import ComparisonReport, ComparisonResult, DescriptiveMetadata
from .naming import sanitize_product_name


# --------------------------------------------------------------
# Marketplace bulk-upload template
# --------------------------------------------------------------

STORE_SHEET_NAME = "Games"
MANAGEMENT_SHEET_NAME = "Management"
STORE_TITLE_CELL = "상품 기본정보"

STORE_COLUMN_HEADERS: List[str] = [
    "판매자 상품코드", "카테고리코드", "상품명", "상품상태", "판매가", "부가세", "재고수량",
    "옵션형태", "옵션명", "옵션값", "옵션가", "옵션 재고수량", "직접입력 옵션", "추가상품명",
    "추가상품값", "추가상품가", "추가상품 재고수량", "대표이미지", "추가이미지", "상세설명",
    "브랜드", "제조사", "제조일자", "유효일자", "원산지코드", "수입사", "복수원산지여부",
    "원산지 직접입력", "미성년자 구매", "배송비 템플릿코드", "배송방법", "택배사코드",
    "배송비유형", "기본배송비", "배송비 결제방식", "조건부무료- 상품판매가 합계",
    "수량별부과-수량", "구간별- 2구간수량", "구간별- 3구간수량", "구간별- 3구간배송비",
    "구간별- 추가배송비", "반품배송비", "교환배송비", "지역별 차등 배송비", "별도설치비",
    "상품정보제공고시 템플릿코드", "상품정보제공고시 품명", "상품정보제공고시 모델명",
    "상품정보제공고시 인증허가사항", "상품정보제공고시 제조자", "A/S 템플릿코드",
    "A/S 전화번호", "A/S 안내", "판매자특이사항", "즉시할인 값 (기본할인)",
    "즉시할인 단위 (기본할인)", "모바일 즉시할인 값", "모바일 즉시할인 단위",
    "복수구매할인 조건 값", "복수구매할인 조건 단위", "복수구매할인 값", "복수구매할인 단위",
    "상품구매시 포인트 지급 값", "상품구매시 포인트 지급 단위", "텍스트리뷰 작성시 지급 포인트",
    "포토/동영상 리뷰 작성시 지급 포인트", "한달사용 텍스트리뷰 작성시 지급 포인트",
    "한달사용 포토/동영상리뷰 작성시 지급 포인트", "알림받기동의 고객 리뷰 작성 시 지급 포인트",
    "무이자 할부 개월", "사은품", "판매자바코드", "구매평 노출여부", "구매평 비노출사유",
    "알림받기 동의 고객 전용 여부", "ISBN", "ISSN", "독립출판", "출간일", "출판사",
    "글작가", "그림작가", "번역자명", "문화비 소득공제", "사이즈 상품군", "사이즈 사이즈명",
    "사이즈 상세 사이즈", "사이즈 모델명",
]

STORE_ROW_WIDTH = len(STORE_COLUMN_HEADERS)

# Column index -> value, identical on every listing
STORE_FIXED_VALUES: Dict[int, str] = {
    1: "50001735",            # category code
    3: "신상품",               # condition
    5: "과세상품",             # VAT
    6: "5",                   # stock
    7: "단독형",               # option type
    8: "메일주소필수기입",       # option name
    24: "03",                 # origin code
    26: "N",                  # multiple origins
    27: "상세설명에 표시",       # origin (free text)
    28: "Y",                  # minors may buy
    30: "직접배송(화물배달)",    # delivery method
    32: "무료",                # shipping fee type
    33: "0",                  # base shipping fee
    41: "0",                  # return fee
    42: "0",                  # exchange fee
    44: "0",                  # installation fee
    50: "3235865",            # A/S template
    51: "050714090848",       # A/S phone
    52: "050714090848",       # A/S info
    72: "Y",                  # show reviews
    74: "N",                  # subscribers only
}

# Row written when metadata could not be fetched at all
STORE_FALLBACK_OVERRIDES: Dict[int, str] = {44: "N"}

COL_PRODUCT_NAME = 2
COL_SELL_PRICE = 4
COL_OPTION_VALUE = 9
COL_HEADER_IMAGE = 17
COL_EXTRA_IMAGES = 18
COL_DETAIL_HTML = 19
COL_BRAND = 20
COL_MANUFACTURER = 21

UNKNOWN_DEVELOPER = "Unknown Developer"
PRODUCT_NAME_PREFIX = "[우회X 한국코드]"
PRODUCT_NAME_SUFFIX = "스팀 키"
DETAIL_IMG_TEMPLATE = '<img src="{url}" style="opacity: 1; max-width: 803px; max-height: 550px;">'

# Management sheet lists at this much under the chosen sell price
MANAGEMENT_PRICE_MARGIN = 500


# --------------------------------------------------------------
# Row builders
# --------------------------------------------------------------

def build_product_name(name: str, localized_title: str = "") -> str:
    clean = sanitize_product_name(name)
    localized = sanitize_product_name(localized_title)
    if localized:
        return f"{PRODUCT_NAME_PREFIX} {clean} {localized} {PRODUCT_NAME_SUFFIX}"
    return f"{PRODUCT_NAME_PREFIX} {clean} {PRODUCT_NAME_SUFFIX}"


def _blank_row(width: int = STORE_ROW_WIDTH) -> List[Any]:
    return [""] * width


def build_store_row(
    result: ComparisonResult,
    metadata: Optional[DescriptiveMetadata],
    sell_price: Optional[int] = None,
) -> List[Any]:
    """
    One data row of the store sheet. With metadata=None the row keeps only
    the fixed values, the product name and the price.
    """
    name = result.product.normalized_title
    row = _blank_row()
    for idx, value in STORE_FIXED_VALUES.items():
        row[idx] = value

    row[COL_SELL_PRICE] = sell_price or result.source_a_price
    row[COL_OPTION_VALUE] = name

    if metadata is None:
        for idx, value in STORE_FALLBACK_OVERRIDES.items():
            row[idx] = value
        row[COL_PRODUCT_NAME] = build_product_name(name)
        row[COL_BRAND] = UNKNOWN_DEVELOPER
        row[COL_MANUFACTURER] = UNKNOWN_DEVELOPER
        return row

    shots = list(metadata.screenshot_urls)
    developer = metadata.developer_name or UNKNOWN_DEVELOPER

    row[COL_PRODUCT_NAME] = build_product_name(name, metadata.localized_title)
    row[COL_HEADER_IMAGE] = metadata.header_image_url
    row[COL_EXTRA_IMAGES] = "\n".join(shots)
    row[COL_DETAIL_HTML] = "\n".join(DETAIL_IMG_TEMPLATE.format(url=u) for u in shots)
    row[COL_BRAND] = developer
    row[COL_MANUFACTURER] = developer
    return row


def build_store_rows(
    items: Iterable[Tuple[ComparisonResult, Optional[DescriptiveMetadata]]],
    sell_prices: Optional[Dict[str, int]] = None,
) -> List[List[Any]]:
    """Title row, header row, then one row per (result, metadata) pair."""
    sell_prices = sell_prices or {}
    title_row = _blank_row()
    title_row[0] = STORE_TITLE_CELL

    rows: List[List[Any]] = [title_row, list(STORE_COLUMN_HEADERS)]
    for result, metadata in items:
        rows.append(build_store_row(result, metadata, sell_prices.get(result.product.id)))
    return rows


def build_management_row(
    result: ComparisonResult,
    localized_title: str = "",
    sell_price: Optional[int] = None,
) -> List[Any]:
    price = sell_price or 0
    return [
        build_product_name(result.product.normalized_title, localized_title),
        "",
        result.product.detail_url or "",
        "0",
        max(0, price - MANAGEMENT_PRICE_MARGIN),
        "0",
        result.source_a_price,
    ]


def build_management_rows(
    items: Iterable[Tuple[ComparisonResult, str]],
    sell_prices: Optional[Dict[str, int]] = None,
) -> List[List[Any]]:
    sell_prices = sell_prices or {}
    return [
        build_management_row(result, localized, sell_prices.get(result.product.id))
        for result, localized in items
    ]


# --------------------------------------------------------------
# Save to disk
# --------------------------------------------------------------

def save_export_workbook(path: Path | str, sheet_name: str, rows: Sequence[Sequence[Any]]) -> Path:
    """
    Writes a fresh single-sheet XLSX file from pre-built rows.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    log(f"Saving {sheet_name} export ({len(rows)} rows) → {path}", context="workbook")

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = sheet_name

    for row in rows:
        ws.append(list(row))

    wb.save(path)
    log("Workbook saved.", context="workbook")
    return path


# --------------------------------------------------------------
# Tabular preview for the CLI
# --------------------------------------------------------------

PREVIEW_COLUMNS = [
    "name",
    "exactName",
    "cdkeysPrice",
    "steamOriginalPrice",
    "steamFinalPrice",
    "steamDiscount",
    "savings",
    "savingsPercent",
    "matchStage",
]


def report_to_frame(report: ComparisonReport) -> pd.DataFrame:
    """Ranked results as a DataFrame, one row per matched product."""
    records = [r.to_dict() for r in report.results]
    if not records:
        return pd.DataFrame(columns=PREVIEW_COLUMNS)
    df = pd.DataFrame.from_records(records)
    return df[PREVIEW_COLUMNS]


def unmatched_to_frame(report: ComparisonReport) -> pd.DataFrame:
    records = [u.to_dict() for u in report.unmatched]
    if not records:
        return pd.DataFrame(columns=["name", "price", "reason"])
    return pd.DataFrame.from_records(records)[["name", "price", "reason"]]
