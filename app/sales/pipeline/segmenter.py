"""
Spreadsheet segmenter.

Sales exports are only loosely tabular: customer header rows, date rows,
bill‑number rows, item rows and ``TOTAL AMOUNT`` rows follow each other in
whatever order the export batch produced.  Rows are labelled by an ordered
rule table and a running customer / bill cursor groups them into the same
``DraftBill`` shape the receipt assembler produces.
"""
from __future__ import annotations

import datetime as dt
import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable, NamedTuple, Optional

from app.config import settings
from app.sales.pipeline.classifier import normalize_store_name, parse_date
from app.sales.pipeline.items import to_decimal
from app.sales.schemas import DraftBill, DraftItem

logger = logging.getLogger(__name__)

CUSTOMER_HEADER_RE = re.compile(r"^(\d{9,10})\s+(\S.*)$")
DATE_CELL_RE = re.compile(r"^\d{2}-\d{2}-\d{4}$")
BILL_CELL_RE = re.compile(r"^(CS/\d+|CN\d+)\b\s*(.*)$")
MOBILE_NOISE_RE = re.compile(r"-+\s*Mobile\s*-+", re.IGNORECASE)
QTY_CELL_RE = re.compile(r"^\d+\.0$")
BATCH_CELL_RE = re.compile(r"^(\d+/\d+)\s+(\w+)")
NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
TOTAL_MARK = "TOTAL AMOUNT"
TOTAL_INLINE_RE = re.compile(r"TOTAL AMOUNT\s*:?\s*(-?\d+(?:\.\d+)?)")
PHONE_RE = re.compile(r"Phone\s*:\s*(\d+)", re.IGNORECASE)
EMAIL_RE = re.compile(r"E-Mail\s*:\s*(\S+)", re.IGNORECASE)

BOILERPLATE = (
    "SALES STATEMENT",
    "PHONE",
    "E-MAIL",
    "PLOT",
    "PIN",
    "GST",
    "D.L.",
    "DL NO",
    "BILL NO",
    "DESCRIPTION",
)
ADDRESS_MARKERS = ("PLOT", "PIN", "AT.", "PO.", "ROAD", "NAGAR")

ZERO = Decimal("0")
CENT = Decimal("0.01")


class RowKind(Enum):
    CUSTOMER_HEADER = "customer_header"
    BILL_NUMBER = "bill_number"
    TOTAL = "total"
    ITEM = "item"
    DATE = "date"
    OTHER = "other"


class BillCell(NamedTuple):
    index: int
    bill_no: str
    rest: str


class StoreIdentity(NamedTuple):
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""


class _Customer(NamedTuple):
    phone: Optional[str]
    name: Optional[str]


# ---------------------------------------------------------------------------
# Cell / row predicates
# ---------------------------------------------------------------------------

def _is_number(cell: str) -> bool:
    return bool(NUMBER_RE.match(cell))


def _is_description(cell: str) -> bool:
    return (
        len(cell) > 5
        and bool(re.search(r"[A-Z]", cell))
        and cell == cell.upper()
        and not cell[0].isdigit()
    )


def find_bill_number(cells: list[str]) -> Optional[BillCell]:
    for idx, cell in enumerate(cells):
        if not cell:
            continue
        m = BILL_CELL_RE.match(MOBILE_NOISE_RE.sub("", cell).strip())
        if m:
            return BillCell(idx, m.group(1), m.group(2).strip())
    return None


def find_date(cells: list[str]) -> Optional[dt.date]:
    for cell in cells:
        if cell and DATE_CELL_RE.match(cell):
            parsed = parse_date(cell)
            if parsed is not None:
                return parsed
    return None


def customer_header(cells: list[str]) -> Optional[_Customer]:
    for cell in cells:
        m = CUSTOMER_HEADER_RE.match(cell) if cell else None
        if m:
            return _Customer(m.group(1), m.group(2).strip())
    return None


def is_customer_header(cells: list[str]) -> bool:
    return customer_header(cells) is not None and find_bill_number(cells) is None


def is_item_row(cells: list[str]) -> bool:
    has_description = any(c and _is_description(c) for c in cells)
    has_qty_or_batch = any(c and (QTY_CELL_RE.match(c) or BATCH_CELL_RE.match(c)) for c in cells)
    return has_description and has_qty_or_batch


def is_total_row(cells: list[str]) -> bool:
    return any(TOTAL_MARK in c.upper() for c in cells if c)


ROW_RULES: list[tuple[RowKind, Callable[[list[str]], bool]]] = [
    (RowKind.CUSTOMER_HEADER, is_customer_header),
    (RowKind.BILL_NUMBER, lambda cells: find_bill_number(cells) is not None),
    (RowKind.TOTAL, is_total_row),
    (RowKind.ITEM, is_item_row),
    (RowKind.DATE, lambda cells: find_date(cells) is not None),
]


def classify_row(cells: list[str]) -> RowKind:
    for kind, predicate in ROW_RULES:
        if predicate(cells):
            return kind
    return RowKind.OTHER


# ---------------------------------------------------------------------------
# Value extractors
# ---------------------------------------------------------------------------

def extract_item_cells(cells: list[str]) -> Optional[DraftItem]:
    """Item from one row; ``None`` when no description cell is present."""
    name = ""
    quantity = 1
    qty_idx: Optional[int] = None
    batch = ""
    expiry = ""
    price = ZERO
    for idx, cell in enumerate(cells):
        if not cell:
            continue
        if _is_description(cell):
            name = name or cell
        elif qty_idx is None and QTY_CELL_RE.match(cell):
            quantity = max(1, int(float(cell)))
            qty_idx = idx
        elif not batch and BATCH_CELL_RE.match(cell):
            m = BATCH_CELL_RE.match(cell)
            expiry = m.group(1)
            batch = cell[m.end(1):].strip()
        elif _is_number(cell) and to_decimal(cell) > 0:
            price = to_decimal(cell)
    if not name:
        return None
    return DraftItem(quantity=quantity, name=name, batch=batch, expiry=expiry, unit_price=price)


def extract_total(cells: list[str]) -> Decimal:
    for idx, cell in enumerate(cells):
        if not cell or TOTAL_MARK not in cell.upper():
            continue
        m = TOTAL_INLINE_RE.search(cell.upper())
        if m:
            return to_decimal(m.group(1))
        for amount in cells[idx + 1:idx + 3]:
            if amount and _is_number(amount):
                return to_decimal(amount)
    for amount in cells[2:4]:
        if amount and _is_number(amount):
            return to_decimal(amount)
    return ZERO


def payment_from_row(cells: list[str], bill_no: str) -> tuple[Decimal, Decimal]:
    """Cash and credit magnitudes from the last two cells of the row carrying *bill_no*.

    Credit notes print their amounts negative; drafts keep magnitudes and the
    sign of a return is applied when the bill is stored.
    """
    bill = find_bill_number(cells)
    if bill is None or bill.bill_no != bill_no or len(cells) < bill.index + 3:
        return ZERO, ZERO
    cash_cell, credit_cell = cells[-2], cells[-1]
    cash = abs(to_decimal(cash_cell)) if _is_number(cash_cell) else ZERO
    credit = abs(to_decimal(credit_cell)) if _is_number(credit_cell) else ZERO
    return cash, credit


def detect_store(rows: list[list[str]]) -> StoreIdentity:
    """Store identity from the sheet's header rows."""
    name: Optional[str] = None
    fallback_name: Optional[str] = None
    address = ""
    phone = ""
    email = ""
    aliases = {normalize_store_name(k): v for k, v in settings.STORE_NAME_ALIASES.items()}

    for cells in rows[:settings.SHEET_HEADER_ROWS]:
        if classify_row(cells) in (RowKind.CUSTOMER_HEADER, RowKind.BILL_NUMBER):
            break
        filled = [c for c in cells if c]
        if not filled:
            continue
        text = " ".join(filled)
        upper = normalize_store_name(text)

        if PHONE_RE.search(text):
            phone = PHONE_RE.search(text).group(1)
        if EMAIL_RE.search(text):
            email = EMAIL_RE.search(text).group(1)
        if not address and any(marker in upper for marker in ADDRESS_MARKERS):
            address = filled[0]

        if name is None:
            name = next(
                (s for s in settings.KNOWN_STORES if normalize_store_name(s) in upper),
                None,
            )
        if name is None:
            name = next((v for k, v in aliases.items() if k in upper), None)
        if (
            fallback_name is None
            and len(filled) == 1
            and re.search(r"[A-Z]", upper)
            and not any(word in upper for word in BOILERPLATE)
            and classify_row(cells) is RowKind.OTHER
        ):
            fallback_name = filled[0]

    name = name or fallback_name
    if not name:
        logger.warning("Could not determine store name from header rows, using fallback")
        return StoreIdentity(
            settings.FALLBACK_STORE_NAME,
            address or settings.FALLBACK_STORE_ADDRESS,
            phone,
            email,
        )
    return StoreIdentity(name, address, phone, email)


# ---------------------------------------------------------------------------
# Segmenter
# ---------------------------------------------------------------------------

class SheetSegmenter:
    """Groups sheet rows into bills with a running customer and bill cursor."""

    def __init__(
        self,
        rows: list[list[str]],
        on_row: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        self.rows = rows
        self.on_row = on_row
        self.store = detect_store(rows)
        self.bills: list[DraftBill] = []
        self._customer = _Customer(None, None)
        self._customer_bills: list[DraftBill] = []
        self._current: Optional[DraftBill] = None
        self._last_date: Optional[dt.date] = None

    def run(self) -> list[DraftBill]:
        total = len(self.rows)
        i = 0
        while i < total:
            i = self._step(i)
            if self.on_row is not None:
                self.on_row(min(i, total), total)
        self._flush()
        for bill in self.bills:
            _finalize(bill)
        logger.info("Segmented %d rows into %d bills (store %s)", total, len(self.bills), self.store.name)
        return self.bills

    # -- row handlers -------------------------------------------------------

    def _step(self, i: int) -> int:
        cells = self.rows[i]
        kind = classify_row(cells)
        if kind is RowKind.CUSTOMER_HEADER:
            self._flush()
            self._customer = customer_header(cells)
            if i + 1 < len(self.rows):
                header_date = find_date(self.rows[i + 1])
                if header_date is not None:
                    self._last_date = header_date
                    return i + 2
        elif kind is RowKind.BILL_NUMBER:
            self._open_bill(i, cells)
        elif kind is RowKind.TOTAL:
            self._close_total(i, cells)
        elif kind is RowKind.ITEM:
            if self._current is not None:
                item = extract_item_cells(cells)
                if item is not None:
                    self._current.items.append(item)
        elif kind is RowKind.DATE:
            self._last_date = find_date(cells)
        return i + 1

    def _open_bill(self, i: int, cells: list[str]) -> None:
        bill_cell = find_bill_number(cells)
        existing = self._find_open(bill_cell.bill_no)
        if existing is not None:
            # a summary row repeating an open bill only carries its payment split
            self._apply_payment(existing, cells)
            return

        bill_date = self._nearest_date(i)
        if bill_date is not None:
            self._last_date = bill_date
        bill = DraftBill(
            bill_no=bill_cell.bill_no,
            is_return=bill_cell.bill_no.startswith("CN"),
            date=bill_date or self._last_date,
            customer_name=self._customer.name,
            customer_phone=self._customer.phone,
            store_name=self.store.name,
            store_address=self.store.address or None,
            store_phone=self.store.phone or None,
            store_email=self.store.email or None,
            source_index=i,
        )
        self._apply_payment(bill, cells)

        first_item_cells = list(cells)
        first_item_cells[bill_cell.index] = bill_cell.rest
        first_item = extract_item_cells(first_item_cells)
        if first_item is not None:
            bill.items.append(first_item)

        self._customer_bills.append(bill)
        self._current = bill

    def _close_total(self, i: int, cells: list[str]) -> None:
        if not self._customer_bills:
            return
        bill_cell = find_bill_number(cells)
        target = self._find_open(bill_cell.bill_no) if bill_cell else self._customer_bills[-1]
        if target is not None:
            target.total_amount = abs(extract_total(cells))
            if target.amount_paid == ZERO and target.credit_amount == ZERO:
                radius = settings.SHEET_PAYMENT_RADIUS
                for j in range(max(0, i - radius), min(len(self.rows), i + radius + 1)):
                    if self._apply_payment(target, self.rows[j]):
                        break

        if i + 1 < len(self.rows):
            if classify_row(self.rows[i + 1]) not in (RowKind.ITEM, RowKind.BILL_NUMBER):
                # end of this customer's section; unowned bills fall to the cash list
                self._flush()
                self._customer = _Customer(None, None)

    # -- helpers ------------------------------------------------------------

    def _apply_payment(self, bill: DraftBill, cells: list[str]) -> bool:
        cash, credit = payment_from_row(cells, bill.bill_no)
        if cash > 0 or credit != 0:
            bill.amount_paid = cash
            bill.credit_amount = credit
            return True
        return False

    def _find_open(self, bill_no: str) -> Optional[DraftBill]:
        return next((b for b in self._customer_bills if b.bill_no == bill_no), None)

    def _nearest_date(self, i: int) -> Optional[dt.date]:
        lo = max(-1, i - 1 - settings.SHEET_DATE_LOOKBEHIND)
        for j in range(i, lo, -1):
            found = find_date(self.rows[j])
            if found is not None:
                return found
        return None

    def _flush(self) -> None:
        self.bills.extend(self._customer_bills)
        self._customer_bills = []
        self._current = None


def _finalize(bill: DraftBill) -> None:
    if bill.amount_paid == ZERO and bill.credit_amount == ZERO and bill.total_amount > 0:
        bill.amount_paid = bill.total_amount
    bill.payment_type = "credit" if bill.credit_amount > 0 else "cash"

    total_qty = sum(item.quantity for item in bill.items)
    if total_qty > 0 and bill.total_amount > 0:
        per_unit = (bill.total_amount / total_qty).quantize(CENT, rounding=ROUND_HALF_UP)
        for item in bill.items:
            if item.unit_price == ZERO:
                item.unit_price = per_unit


def segment_rows(
    rows: list[list[str]],
    on_row: Optional[Callable[[int, int], None]] = None,
) -> list[DraftBill]:
    """Group sheet rows into draft bills. *on_row* receives ``(done, total)``."""
    return SheetSegmenter(rows, on_row=on_row).run()
