"""
Customer identity fallbacks.

Receipts frequently omit the customer name, the phone, or both, while every
bill must point at a customer.  Four policies, applied in order:

=================  =====================  ======================
present            upsert key (phone)     name
=================  =====================  ======================
name + phone       phone                  name
name only          sentinel phone         name
phone only         phone                  "Unknown Customer"
neither            sentinel phone         "Cashlist Customer"
=================  =====================  ======================
"""
from __future__ import annotations

from typing import NamedTuple, Optional

from app.config import settings


class CustomerIdentity(NamedTuple):
    phone: str
    name: str
    is_cashlist: bool


def resolve_customer_identity(name: Optional[str], phone: Optional[str]) -> CustomerIdentity:
    name = (name or "").strip() or None
    phone = (phone or "").strip() or None

    if name and phone:
        return CustomerIdentity(phone, name, phone == settings.SENTINEL_PHONE)
    if name:
        return CustomerIdentity(settings.SENTINEL_PHONE, name, True)
    if phone:
        return CustomerIdentity(
            phone, settings.UNKNOWN_CUSTOMER_NAME, phone == settings.SENTINEL_PHONE
        )
    return CustomerIdentity(settings.SENTINEL_PHONE, settings.CASHLIST_CUSTOMER_NAME, True)


def is_placeholder_name(name: Optional[str]) -> bool:
    return not name or name in (
        settings.UNKNOWN_CUSTOMER_NAME,
        settings.CASHLIST_CUSTOMER_NAME,
    )
