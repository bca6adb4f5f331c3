"""
Canonical models for the bill ingestion pipeline.

Every parsing stage produces and consumes these Pydantic v2 models.
"""
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------

class Role(str, Enum):
    """Semantic role inferred for one input line. Inferred, never declared.

    ``CUSTOMER_NAME``, ``STORE_ADDRESS`` and ``STORE_PHONE`` have no shape of
    their own; the assembler adds them to the lines it resolves by position.
    """
    BILL_NUMBER = "bill_number"
    DATE = "date"
    PHONE = "phone"
    CUSTOMER_NAME = "customer_name"
    PAYMENT_MARKER = "payment_marker"
    STORE_NAME = "store_name"
    STORE_ADDRESS = "store_address"
    STORE_PHONE = "store_phone"
    AMOUNT_WORDS = "amount_words"
    DECIMAL = "decimal"
    QUANTITY = "quantity"
    BATCH = "batch"
    EXPIRY = "expiry"
    FOOTER = "footer"
    UNCLASSIFIED = "unclassified"


class RawLine(BaseModel):
    """One receipt text line. Sheet rows stay plain lists of cell strings."""
    model_config = ConfigDict(frozen=True)

    index: int
    text: str


class ClassifiedLine(RawLine):
    roles: frozenset[Role] = frozenset({Role.UNCLASSIFIED})

    def has(self, role: Role) -> bool:
        return role in self.roles


# ---------------------------------------------------------------------------
# Drafts (parsed, not yet persisted, possibly invalid)
# ---------------------------------------------------------------------------

class DraftItem(BaseModel):
    quantity: int = Field(1, ge=1)
    name: str
    batch: str = ""
    expiry: str = ""
    unit_price: Decimal = Field(Decimal("0"), ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)


class DraftBill(BaseModel):
    bill_no: Optional[str] = None
    is_return: bool = False
    date: Optional[dt.date] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    store_name: Optional[str] = None
    store_address: Optional[str] = None
    store_phone: Optional[str] = None
    store_email: Optional[str] = None
    payment_type: str = Field("cash", description="cash | credit")
    total_amount: Decimal = Decimal("0")
    net_discount: Decimal = Decimal("0")
    amount_paid: Decimal = Decimal("0")
    credit_amount: Decimal = Decimal("0")
    items: list[DraftItem] = Field(default_factory=list)
    source_index: int = Field(0, description="Segment or sheet row the bill came from")

    def missing_fields(self) -> list[str]:
        """Essential fields without which the bill must not be persisted."""
        missing: list[str] = []
        if not self.bill_no:
            missing.append("bill_no")
        if self.date is None:
            missing.append("date")
        if not self.store_name:
            missing.append("store")
        return missing


class Rejection(BaseModel):
    """A draft stopped by the validity gate."""
    bill_no: Optional[str] = None
    source_index: int = 0
    missing: list[str] = Field(default_factory=list)

    @property
    def reason(self) -> str:
        return "missing essential info: " + ", ".join(self.missing)


class ParseResult(BaseModel):
    bills: list[DraftBill] = Field(default_factory=list)
    rejected: list[Rejection] = Field(default_factory=list)
    total_units: int = Field(0, description="Lines/segments or sheet rows scanned")
