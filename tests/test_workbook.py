import openpyxl

from keydeal_selector.models import DescriptiveMetadata
from keydeal_selector.workbook import (
    STORE_COLUMN_HEADERS,
    STORE_ROW_WIDTH,
    build_management_row,
    build_management_rows,
    build_product_name,
    build_store_row,
    build_store_rows,
    report_to_frame,
    save_export_workbook,
)
from keydeal_selector.models import ComparisonReport, ComparisonResult

from conftest import make_match, make_product


def _result(title="Some Game", a_price=10000, original=50000):
    product = make_product(title, f"₩{a_price:,}")
    return ComparisonResult(
        product=product,
        match=make_match("1", title),
        source_a_price=a_price,
        source_b_original_price=original,
        source_b_final_price=original,
        savings=original - a_price,
        savings_percent=80,
    )


META = DescriptiveMetadata(
    title="Some Game",
    header_image_url="https://cdn.example/h.jpg",
    screenshot_urls=["https://cdn.example/1.jpg", "https://cdn.example/2.jpg"],
    developer_name="Studio",
    localized_title="썸: 게임",
)


def test_product_name_with_and_without_localized_title():
    assert build_product_name("Some Game", "썸: 게임") == "[우회X 한국코드] Some Game 썸 게임 스팀 키"
    assert build_product_name("Some/Game") == "[우회X 한국코드] SomeGame 스팀 키"


def test_store_row_fixed_and_derived_values():
    row = build_store_row(_result(), META)

    assert len(row) == STORE_ROW_WIDTH
    assert row[1] == "50001735"
    assert row[3] == "신상품"
    assert row[4] == 10000
    assert row[5] == "과세상품"
    assert row[6] == "5"
    assert row[9] == "Some Game"
    assert row[17] == "https://cdn.example/h.jpg"
    assert row[18] == "https://cdn.example/1.jpg\nhttps://cdn.example/2.jpg"
    assert row[19].splitlines()[0] == (
        '<img src="https://cdn.example/1.jpg" '
        'style="opacity: 1; max-width: 803px; max-height: 550px;">'
    )
    assert row[20] == row[21] == "Studio"
    assert row[44] == "0"
    assert row[50] == "3235865"
    assert row[72] == "Y"
    assert row[74] == "N"


def test_sell_price_override_and_missing_developer():
    meta = DescriptiveMetadata(title="Some Game")
    row = build_store_row(_result(), meta, sell_price=12900)

    assert row[4] == 12900
    assert row[20] == "Unknown Developer"
    assert row[18] == ""


def test_fallback_row_without_metadata():
    row = build_store_row(_result(), None)

    assert row[2] == "[우회X 한국코드] Some Game 스팀 키"
    assert row[17] == ""
    assert row[21] == "Unknown Developer"
    assert row[44] == "N"


def test_store_rows_start_with_title_and_headers():
    rows = build_store_rows([(_result(), META)], sell_prices={"game_1700000000000_0": 11000})

    assert rows[0][0] == "상품 기본정보"
    assert all(cell == "" for cell in rows[0][1:])
    assert rows[1] == STORE_COLUMN_HEADERS
    assert rows[2][4] == 11000
    assert len(rows) == 3


def test_management_row_price_margin_needs_sell_price():
    result = _result(a_price=10000)

    row = build_management_row(result, "썸 게임")
    assert row == [
        "[우회X 한국코드] Some Game 썸 게임 스팀 키",
        "",
        result.product.detail_url,
        "0",
        0,
        "0",
        10000,
    ]

    assert build_management_row(result, sell_price=10000)[4] == 9500
    assert build_management_row(result, sell_price=300)[4] == 0
    assert build_management_rows([(result, "")], {"game_1700000000000_0": 15000})[0][4] == 14500


def test_save_export_workbook_round_trip(tmp_path):
    rows = [["a", 1], ["b", 2]]
    path = save_export_workbook(tmp_path / "nested" / "out.xlsx", "Management", rows)

    wb = openpyxl.load_workbook(path)
    assert wb.sheetnames == ["Management"]
    assert [list(r) for r in wb["Management"].iter_rows(values_only=True)] == rows


def test_report_frame_preview():
    report = ComparisonReport(total_count=1, results=[_result()])
    df = report_to_frame(report)

    assert list(df["savings"]) == [40000]
    assert report_to_frame(ComparisonReport()).empty
