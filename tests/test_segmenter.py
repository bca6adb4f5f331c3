"""
Unit tests for the spreadsheet reader and segmenter.
"""
import datetime as dt
from decimal import Decimal

import pytest

from app.sales.pipeline import parse_workbook
from app.sales.pipeline.segmenter import (
    RowKind,
    classify_row,
    detect_store,
    extract_item_cells,
    segment_rows,
)
from app.sales.pipeline.workbook import WorkbookError, looks_like_xlsx, read_rows


def _rows(raw):
    """Render rows the way the workbook reader does."""
    out = []
    for row in raw:
        cells = ["" if c is None else str(c) for c in row]
        while cells and not cells[-1]:
            cells.pop()
        out.append(cells)
    return out


# =====================================================================
# Workbook reader
# =====================================================================
class TestWorkbook:
    def test_read_rows(self, make_xlsx):
        data = make_xlsx([["RUCHIKA"], ["CS/1", None, "10.00", None]])
        assert looks_like_xlsx(data)
        assert read_rows(data) == [["RUCHIKA"], ["CS/1", "", "10.00"]]

    def test_dates_rendered(self, make_xlsx):
        data = make_xlsx([[dt.date(2023, 7, 1)]])
        assert read_rows(data) == [["01-07-2023"]]

    def test_not_a_workbook(self):
        assert not looks_like_xlsx(b"hello")
        with pytest.raises(WorkbookError):
            read_rows(b"PK\x03\x04 not really a zip")


# =====================================================================
# Row rules
# =====================================================================
class TestRowRules:
    def test_customer_header(self):
        assert classify_row(["9876543210 JANE DOE"]) is RowKind.CUSTOMER_HEADER

    def test_header_with_bill_is_a_bill_row(self):
        assert classify_row(["9876543210 JANE DOE", "CS/1001"]) is RowKind.BILL_NUMBER

    def test_bill_row_strips_mobile_noise(self):
        assert classify_row(["CS/1001 -- Mobile --"]) is RowKind.BILL_NUMBER
        assert classify_row(["CN0042"]) is RowKind.BILL_NUMBER

    def test_item_and_total_rows(self):
        assert classify_row(["", "", "PARACETAMOL 500MG", "2.0"]) is RowKind.ITEM
        assert classify_row(["DOLO 650 TABLET", "10/26 A77"]) is RowKind.ITEM
        assert classify_row(["", "", "TOTAL AMOUNT", "150.0"]) is RowKind.TOTAL

    def test_date_and_other_rows(self):
        assert classify_row(["01-07-2023"]) is RowKind.DATE
        assert classify_row(["SALES STATEMENT"]) is RowKind.OTHER
        assert classify_row([]) is RowKind.OTHER

    def test_item_cells(self):
        item = extract_item_cells(["", "", "PARACETAMOL 500MG", "2.0", "9/26 B12", "40.00"])
        assert item.quantity == 2
        assert item.name == "PARACETAMOL 500MG"
        assert item.expiry == "9/26"
        assert item.batch == "B12"
        assert item.unit_price == Decimal("40.00")


# =====================================================================
# Store identity
# =====================================================================
class TestStoreIdentity:
    def test_allow_list_and_contacts(self, sales_sheet):
        store = detect_store(_rows(sales_sheet))
        assert store.name == "RUCHIKA"
        assert store.address == "AT.PLOT NO.12, BHUBANESWAR"
        assert store.phone == "9437000000"
        assert store.email == "ruchika@example.com"

    def test_alias(self):
        store = detect_store([["IRC VILAGE BRANCH"]])
        assert store.name == "IRC VILLAGE"

    def test_non_boilerplate_name_line(self):
        store = detect_store([["SALES STATEMENT"], ["NEW TOWN PHARMACY"]])
        assert store.name == "NEW TOWN PHARMACY"

    def test_fallback_store(self):
        store = detect_store([["9876543210 JANE DOE"], ["01-07-2023"], ["CS/1"]])
        assert store.name == "WEKEYAR PLUS"
        assert "CHANDRASEKHARPUR" in store.address


# =====================================================================
# Segmenter
# =====================================================================
class TestSegmenter:
    def test_customer_section(self, sales_sheet):
        (bill,) = segment_rows(_rows(sales_sheet))
        assert bill.bill_no == "CS/1001"
        assert bill.customer_name == "JANE DOE"
        assert bill.customer_phone == "9876543210"
        assert bill.date == dt.date(2023, 7, 1)
        assert bill.store_name == "RUCHIKA"
        assert len(bill.items) == 2
        assert bill.total_amount == Decimal("150.00")
        assert bill.amount_paid == Decimal("150.00")
        assert bill.payment_type == "cash"

    def test_cashlist_reset_credit_and_price_fallback(self):
        rows = _rows([
            ["RUCHIKA"],
            ["9876543210 JANE DOE"],
            ["01-07-2023"],
            ["CS/1001 PARACETAMOL 500MG", "2.0", "9/26 B12", "40.00", "0", "-40.00"],
            ["TOTAL AMOUNT", "40.00"],
            [],
            ["CS/1002", "", "", "25.00", "0"],
            ["DOLO 650 TABLET", "1.0", "10/26 A77"],
            ["TOTAL AMOUNT", "25.00"],
        ])
        first, second = segment_rows(rows)

        assert first.customer_name == "JANE DOE"
        assert first.items[0].name == "PARACETAMOL 500MG"
        assert first.payment_type == "credit"
        assert first.credit_amount == Decimal("40.00")
        assert first.amount_paid == Decimal("0")

        assert second.customer_name is None
        assert second.customer_phone is None
        assert second.date == dt.date(2023, 7, 1)
        assert second.amount_paid == Decimal("25.00")
        assert second.items[0].unit_price == Decimal("25.00")

    def test_payment_from_nearby_row(self):
        rows = _rows([
            ["RUCHIKA"],
            ["01-07-2023"],
            ["CS/2001"],
            ["SYRUP BENADRYL", "1.0"],
            ["TOTAL AMOUNT", "60.00"],
            ["CS/2001", "", "20.00", "40.00"],
        ])
        (bill,) = segment_rows(rows)
        assert bill.total_amount == Decimal("60.00")
        assert bill.amount_paid == Decimal("20.00")
        assert bill.credit_amount == Decimal("40.00")
        assert bill.payment_type == "credit"

    def test_return_bill(self):
        rows = _rows([["RUCHIKA"], ["01-07-2023"], ["CN0042"], ["TOTAL AMOUNT", "30.00"]])
        (bill,) = segment_rows(rows)
        assert bill.is_return is True
        assert bill.amount_paid == Decimal("30.00")

    def test_negative_return_amounts_kept_as_magnitudes(self):
        rows = _rows([
            ["RUCHIKA"],
            ["01-07-2023"],
            ["CN0042", "", "-30.00", "0"],
            ["DOLO 650 TABLET", "1.0", "10/26 A77"],
            ["TOTAL AMOUNT", "-30.00"],
        ])
        (bill,) = segment_rows(rows)
        assert bill.is_return is True
        assert bill.total_amount == Decimal("30.00")
        assert bill.amount_paid == Decimal("30.00")
        assert bill.payment_type == "cash"
        assert bill.items[0].unit_price == Decimal("30.00")

    def test_no_date_ever_seen(self):
        (bill,) = segment_rows(_rows([["RUCHIKA"], ["CS/1"], ["TOTAL AMOUNT", "10.00"]]))
        assert bill.date is None

    def test_row_progress(self, sales_sheet):
        seen = []
        segment_rows(_rows(sales_sheet), on_row=lambda done, total: seen.append((done, total)))
        assert seen[-1] == (len(sales_sheet), len(sales_sheet))
        assert [d for d, _ in seen] == sorted(d for d, _ in seen)

    def test_parse_workbook_gate(self, make_xlsx, sales_sheet):
        rows = sales_sheet + [["CS/1002"], [None, None, "TOTAL AMOUNT", "10.00"]]
        # both bills dated by the section's date row
        result = parse_workbook(make_xlsx(rows))
        assert [b.bill_no for b in result.bills] == ["CS/1001", "CS/1002"]
        assert result.total_units == len(rows)
