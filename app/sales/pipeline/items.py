"""
Line‑item extractor.

Receipt terminals print items in three dialects, detected per window:

1. a lone 1–3 digit quantity, then the name on the next line;
2. a ``qty:subqty`` token (``1:0``) with the name inline or on the next line;
3. ``qty name...`` already merged on one line.

After the name a bounded look‑ahead picks up the batch code, the expiry and
the decimal columns.  Decimal positions for unit price and discount are a
convention of the sample receipts and come from settings.
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional

from app.config import settings
from app.sales.pipeline.classifier import is_item_name
from app.sales.schemas import ClassifiedLine, DraftItem, Role

QTY_PAIR_RE = re.compile(r"^(\d+):(\d+)(?:\s+(.*\S))?$")
LONE_QTY_RE = re.compile(r"^\d{1,3}$")
MERGED_RE = re.compile(r"^(\d{1,3})\s+([A-Za-z].*)$")


class ItemMarker(NamedTuple):
    quantity: int
    name: Optional[str]
    name_index: int


def to_decimal(text: str) -> Decimal:
    try:
        return Decimal(text.replace(",", "").strip())
    except (InvalidOperation, AttributeError):
        return Decimal("0")


def match_item_marker(lines: list[ClassifiedLine], idx: int) -> Optional[ItemMarker]:
    """Return the item starting at ``lines[idx]`` in any dialect, else ``None``."""
    text = lines[idx].text
    nxt = lines[idx + 1] if idx + 1 < len(lines) else None

    m = QTY_PAIR_RE.match(text)
    if m:
        quantity = next((int(g) for g in m.group(1, 2) if int(g) > 0), 0)
        if quantity == 0:
            return None
        if m.group(3):
            return ItemMarker(quantity, m.group(3), idx)
        if nxt is not None and is_item_name(nxt):
            return ItemMarker(quantity, nxt.text, idx + 1)
        return ItemMarker(quantity, None, idx)

    if LONE_QTY_RE.match(text):
        quantity = int(text)
        if quantity > 0 and nxt is not None and is_item_name(nxt):
            return ItemMarker(quantity, nxt.text, idx + 1)
        return None

    m = MERGED_RE.match(text)
    if m and int(m.group(1)) > 0:
        return ItemMarker(int(m.group(1)), m.group(2).strip(), idx)
    return None


def extract_item(
    lines: list[ClassifiedLine],
    idx: int,
    lookahead: Optional[int] = None,
    price_slot: Optional[int] = None,
    discount_slot: Optional[int] = None,
) -> tuple[Optional[DraftItem], int]:
    """Build the item starting at *idx*.

    Returns ``(item_or_None, next_index)``.  ``next_index`` is where the
    caller should resume scanning: the next item marker, the ``Rs.`` line,
    or the end of the look‑ahead window.
    """
    lookahead = settings.ITEM_LOOKAHEAD if lookahead is None else lookahead
    price_slot = settings.ITEM_PRICE_SLOT if price_slot is None else price_slot
    discount_slot = settings.ITEM_DISCOUNT_SLOT if discount_slot is None else discount_slot

    marker = match_item_marker(lines, idx)
    if marker is None:
        return None, idx + 1

    batch = ""
    expiry = ""
    decimals: list[Decimal] = []
    pos = marker.name_index + 1
    stop = min(len(lines), pos + lookahead)
    while pos < stop:
        line = lines[pos]
        if line.text.startswith("Rs.") or match_item_marker(lines, pos):
            break
        if line.has(Role.DECIMAL):
            decimals.append(to_decimal(line.text))
        elif not expiry and not decimals and line.has(Role.EXPIRY):
            expiry = line.text
        elif not batch and not expiry and not decimals and line.has(Role.BATCH):
            batch = line.text
        pos += 1

    if not marker.name:
        return None, pos

    def slot(n: int) -> Decimal:
        return decimals[n - 1] if 0 < n <= len(decimals) else Decimal("0")

    item = DraftItem(
        quantity=marker.quantity,
        name=marker.name,
        batch=batch,
        expiry=expiry,
        unit_price=slot(price_slot),
        discount=slot(discount_slot),
    )
    return item, pos


def extract_items(lines: list[ClassifiedLine], **options) -> list[DraftItem]:
    """Extract every item in *lines*; names that never resolve are dropped."""
    items: list[DraftItem] = []
    idx = 0
    while idx < len(lines):
        item, nxt = extract_item(lines, idx, **options)
        if item is not None:
            items.append(item)
        idx = max(nxt, idx + 1)
    return items
