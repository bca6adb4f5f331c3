"""
Rule‑based line classifier.

Labels one receipt line with every semantic role whose shape it matches.
The table is ordered; a line may match several rules and the assembler
decides precedence.  Classification is pure and never raises: a line that
matches nothing is ``UNCLASSIFIED`` and is kept for positional lookups.
"""
from __future__ import annotations

import datetime as dt
import re
from typing import Callable, Iterable, Optional

from app.config import settings
from app.sales.schemas import ClassifiedLine, RawLine, Role

BILL_NO_RE = re.compile(r"^(?:[A-Z]{2,}/\d+|CN\d+)$")
DATE_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")
PHONE_RE = re.compile(r"^\d{10}$")
DECIMAL_RE = re.compile(r"^\d+\.\d{2}$")
QUANTITY_RE = re.compile(r"^(?:\d{1,3}|\d+:\d+)$")
BATCH_RE = re.compile(r"^(?=[A-Z0-9]*\d)[A-Z0-9]{1,6}$", re.IGNORECASE)
EXPIRY_RE = re.compile(r"^\d{1,2}/(?:\d{2}|\d{4})$")
TIME_RE = re.compile(r"^TIME\s*:|^\d{1,2}:\d{2}(?::\d{2})?\s*([AP]M)?$", re.IGNORECASE)
FOOTER_RE = re.compile(r"software|\bERP\b", re.IGNORECASE)

# Billing terminals prefix every log line with e.g. "Apr 7 3:12:09 PM"
TIMESTAMP_PREFIX_RE = re.compile(r"^[A-Z][a-z]{2}\s+\d{1,2}\s+\d{1,2}:\d{2}:\d{2}\s*[AP]M\s*")
_SPACES = re.compile(r"\s+")


def clean_line(line: str) -> str:
    """Strip the terminal timestamp prefix and surrounding whitespace."""
    return TIMESTAMP_PREFIX_RE.sub("", line.strip()).strip()


def normalize_store_name(text: str) -> str:
    return _SPACES.sub(" ", text.strip()).upper()


def known_store(text: str) -> Optional[str]:
    """Return the canonical allow‑listed store name that *text* is, if any."""
    name = normalize_store_name(text)
    aliases = {normalize_store_name(k): v for k, v in settings.STORE_NAME_ALIASES.items()}
    if name in aliases:
        return aliases[name]
    for store in settings.KNOWN_STORES:
        if normalize_store_name(store) == name:
            return store
    return None


def parse_date(text: str) -> Optional[dt.date]:
    """Parse ``DD-MM-YYYY``; ``None`` when the shape or calendar date is invalid."""
    m = DATE_RE.match(text.strip())
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def _is_payment_marker(text: str) -> bool:
    upper = text.upper()
    tokens = set(re.findall(r"[A-Z]+", upper))
    if upper.strip() in ("CASH", "CREDIT"):
        return True
    return "BILL" in tokens and bool(tokens & {"CASH", "CREDIT"})


def _is_amount_words(text: str) -> bool:
    return text.startswith("Rs.") and "Only" in text


def _matches(pattern: re.Pattern[str]) -> Callable[[str], bool]:
    return lambda text: bool(pattern.match(text))


# (role, predicate) evaluated in order
RULES: list[tuple[Role, Callable[[str], bool]]] = [
    (Role.BILL_NUMBER, _matches(BILL_NO_RE)),
    (Role.DATE, _matches(DATE_RE)),
    (Role.PHONE, _matches(PHONE_RE)),
    (Role.PAYMENT_MARKER, _is_payment_marker),
    (Role.AMOUNT_WORDS, _is_amount_words),
    (Role.DECIMAL, _matches(DECIMAL_RE)),
    (Role.QUANTITY, _matches(QUANTITY_RE)),
    (Role.BATCH, _matches(BATCH_RE)),
    (Role.EXPIRY, _matches(EXPIRY_RE)),
    (Role.STORE_NAME, lambda text: known_store(text) is not None),
    (Role.FOOTER, lambda text: bool(FOOTER_RE.search(text))),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify(line: str) -> list[Role]:
    """Return every role whose rule matches *line* (``[UNCLASSIFIED]`` if none)."""
    text = line.strip()
    if not text:
        return [Role.UNCLASSIFIED]
    roles = [role for role, predicate in RULES if predicate(text)]
    return roles or [Role.UNCLASSIFIED]


def classify_lines(lines: Iterable[str]) -> list[ClassifiedLine]:
    """Clean, drop blank lines and classify; indexes are positions in the result."""
    out: list[ClassifiedLine] = []
    for raw in lines:
        text = clean_line(raw)
        if not text:
            continue
        out.append(
            ClassifiedLine(index=len(out), text=text, roles=frozenset(classify(text)))
        )
    return out


_NOT_A_NAME = {
    Role.BILL_NUMBER,
    Role.DATE,
    Role.PHONE,
    Role.PAYMENT_MARKER,
    Role.AMOUNT_WORDS,
    Role.DECIMAL,
    Role.QUANTITY,
    Role.EXPIRY,
    Role.FOOTER,
}


def is_name_shaped(line: ClassifiedLine | RawLine) -> bool:
    """True for lines that could be a person, store or product name."""
    text = line.text
    if not re.search(r"[A-Za-z]", text) or TIME_RE.search(text):
        return False
    roles = getattr(line, "roles", frozenset())
    return not (roles & _NOT_A_NAME)


def is_item_name(line: ClassifiedLine) -> bool:
    """A name line that is not just a short batch code such as ``B12``."""
    return is_name_shaped(line) and not line.has(Role.BATCH)
