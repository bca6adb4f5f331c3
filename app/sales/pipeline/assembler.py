"""
Bill assembler for raw receipt text.

A submission may hold several bills glued together by the terminal's
``Creating bill`` log marker.  Each segment is classified and walked by a
small state machine::

    SEEK_BILL_NO → SEEK_DATE → SEEK_CUSTOMER → SEEK_PAYMENT
                 → SEEK_STORE → SEEK_ITEMS → SEEK_TOTAL → DONE

Every state does a bounded forward scan for its target role on a
``LineWindow``; optional lines interleave unpredictably, so no state
assumes its target is the next line.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable, Optional

from app.config import settings
from app.sales.pipeline.classifier import (
    BILL_NO_RE,
    classify_lines,
    clean_line,
    is_name_shaped,
    known_store,
    parse_date,
)
from app.sales.pipeline.cursor import LineWindow
from app.sales.pipeline.items import extract_items, match_item_marker, to_decimal
from app.sales.schemas import ClassifiedLine, DraftBill, Role

logger = logging.getLogger(__name__)

CREATING_BILL_RE = re.compile(r"Creating bill", re.IGNORECASE)
BILL_NO_LIKE_RE = re.compile(r"\b[A-Z]{2,}/\d+\b|^CN\d+$")

# Without a payment marker the customer block is assumed to be this short
CUSTOMER_LOOKAHEAD = 6


class State(Enum):
    SEEK_BILL_NO = "seek_bill_no"
    SEEK_DATE = "seek_date"
    SEEK_CUSTOMER = "seek_customer"
    SEEK_PAYMENT = "seek_payment"
    SEEK_STORE = "seek_store"
    SEEK_ITEMS = "seek_items"
    SEEK_TOTAL = "seek_total"
    DONE = "done"


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------

def split_submissions(raw_text: str) -> list[list[str]]:
    """Split a submission on ``Creating bill`` markers into per‑bill line lists.

    Text after the marker on the same line (usually the bill number) starts
    the new segment.  Without markers the whole text is one segment.
    """
    segments: list[list[str]] = []
    current: list[str] = []
    for raw in raw_text.splitlines():
        text = clean_line(raw)
        m = CREATING_BILL_RE.search(text)
        if m:
            if current:
                segments.append(current)
            current = []
            rest = text[m.end():].strip()
            if rest:
                current.append(rest)
            continue
        if text:
            current.append(text)
    if current:
        segments.append(current)
    return segments


def _has_essentials(lines: list[ClassifiedLine]) -> bool:
    return any(l.has(Role.BILL_NUMBER) or l.has(Role.DATE) for l in lines)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class BillAssembler:
    """Walks one classified segment and fills a ``DraftBill``."""

    def __init__(self, lines: list[ClassifiedLine], source_index: int = 0) -> None:
        self.window = LineWindow(lines)
        self.draft = DraftBill(source_index=source_index)
        self.state = State.SEEK_BILL_NO
        self._date_idx: Optional[int] = None
        self._payment_idx: Optional[int] = None
        self._handlers: dict[State, Callable[[], State]] = {
            State.SEEK_BILL_NO: self._seek_bill_no,
            State.SEEK_DATE: self._seek_date,
            State.SEEK_CUSTOMER: self._seek_customer,
            State.SEEK_PAYMENT: self._seek_payment,
            State.SEEK_STORE: self._seek_store,
            State.SEEK_ITEMS: self._seek_items,
            State.SEEK_TOTAL: self._seek_total,
        }

    def run(self) -> DraftBill:
        while self.state is not State.DONE:
            self.state = self._handlers[self.state]()
        return self.draft

    # -- states -------------------------------------------------------------

    def _seek_bill_no(self) -> State:
        line = self.window.seek(Role.BILL_NUMBER)
        if line is not None:
            self.draft.bill_no = line.text
            self.draft.is_return = line.text.startswith("CN")
        return State.SEEK_DATE

    def _seek_date(self) -> State:
        idx = self.window.find(Role.DATE)
        if idx is None:
            # some layouts print the date above the bill number
            idx = self.window.find(Role.DATE, start=self.window.start)
        if idx is not None:
            self._date_idx = idx
            self.draft.date = parse_date(self.window.lines[idx].text)
            self.window.move_to(max(self.window.position, idx + 1))
        return State.SEEK_CUSTOMER

    def _seek_customer(self) -> State:
        w = self.window
        start = w.position
        payment_idx = w.find(Role.PAYMENT_MARKER, start=start)
        stop = payment_idx if payment_idx is not None else start + CUSTOMER_LOOKAHEAD

        phone_idx = w.find(Role.PHONE, start=start, stop=stop)
        if phone_idx is not None:
            self.draft.customer_phone = w.lines[phone_idx].text
            name_idx = w.find_last(is_name_shaped, start=start, stop=phone_idx)
        else:
            name_idx = w.find(is_name_shaped, start=start, stop=stop)

        if name_idx is not None:
            candidate = w.lines[name_idx]
            if _looks_like_store_or_bill(candidate):
                logger.debug("Discarding customer name false positive: %r", candidate.text)
            else:
                self.draft.customer_name = w.tag(name_idx, Role.CUSTOMER_NAME).text
        return State.SEEK_PAYMENT

    def _seek_payment(self) -> State:
        line = self.window.seek(Role.PAYMENT_MARKER)
        if line is not None:
            self._payment_idx = line.index
            self.draft.payment_type = "credit" if "CREDIT" in line.text.upper() else "cash"
        return State.SEEK_STORE

    def _seek_store(self) -> State:
        w = self.window
        if self._payment_idx is not None:
            first = self._payment_idx + 1
            store_idx = w.find(Role.STORE_NAME, start=first, limit=settings.STORE_LOOKAHEAD)
            if store_idx is None:
                candidate = w.line(first)
                if candidate is not None and is_name_shaped(candidate):
                    store_idx = first
        else:
            store_idx = w.find(Role.STORE_NAME, start=w.start)

        if store_idx is None:
            return State.SEEK_ITEMS

        name_line = w.tag(store_idx, Role.STORE_NAME)
        self.draft.store_name = known_store(name_line.text) or name_line.text
        nxt = store_idx + 1
        address = w.line(nxt)
        if (
            address is not None
            and is_name_shaped(address)
            and match_item_marker(w.lines, nxt) is None
        ):
            self.draft.store_address = w.tag(nxt, Role.STORE_ADDRESS).text
            nxt += 1
        phone = w.line(nxt)
        if phone is not None and phone.has(Role.PHONE):
            self.draft.store_phone = w.tag(nxt, Role.STORE_PHONE).text
            nxt += 1
        w.move_to(max(w.position, nxt))
        return State.SEEK_ITEMS

    def _seek_items(self) -> State:
        w = self.window
        amount_idx = w.find(Role.AMOUNT_WORDS)
        stop = w.end if amount_idx is None else amount_idx
        self.draft.items = extract_items(w.slice(w.position, stop))
        w.move_to(stop)
        return State.SEEK_TOTAL

    def _seek_total(self) -> State:
        w = self.window
        if w.seek(Role.AMOUNT_WORDS) is None:
            return State.DONE
        footer_idx = w.find(Role.FOOTER)
        stop = w.end if footer_idx is None else footer_idx
        # the last decimal before the footer is what was paid;
        # the ones in between are sub-totals and discounts
        decimals = [to_decimal(l.text) for l in w.slice(w.position, stop) if l.has(Role.DECIMAL)]
        if decimals:
            self.draft.total_amount = decimals[0]
            self.draft.amount_paid = decimals[-1]
            if len(decimals) >= 3:
                self.draft.net_discount = decimals[1]
            if self.draft.payment_type == "credit":
                self.draft.credit_amount = decimals[-1]
        w.move_to(stop)
        return State.DONE


def _looks_like_store_or_bill(line: ClassifiedLine) -> bool:
    return (
        line.has(Role.STORE_NAME)
        or line.has(Role.BILL_NUMBER)
        or bool(BILL_NO_LIKE_RE.search(line.text))
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def assemble_bill(lines: list[str], source_index: int = 0) -> DraftBill:
    """Assemble one bill from the lines of a single segment."""
    return BillAssembler(classify_lines(lines), source_index).run()


def assemble_bills(
    raw_text: str,
    on_segment: Optional[Callable[[int, int], None]] = None,
) -> list[DraftBill]:
    """Assemble every bill in a raw receipt submission.

    *on_segment* is called as ``on_segment(done, total)`` after each segment.
    """
    segments = [classify_lines(seg) for seg in split_submissions(raw_text)]
    if len(segments) > 1:
        # terminal chatter before the first marker carries no bill
        segments = [seg for seg in segments if _has_essentials(seg)] or segments

    drafts: list[DraftBill] = []
    total = len(segments)
    for idx, lines in enumerate(segments):
        draft = BillAssembler(lines, source_index=idx).run()
        logger.debug(
            "Segment %d: bill_no=%s date=%s items=%d",
            idx, draft.bill_no, draft.date, len(draft.items),
        )
        drafts.append(draft)
        if on_segment is not None:
            on_segment(idx + 1, total)
    return drafts
