"""
Persistence collaborator for the ingestion worker.

Customers are keyed by phone, stores by name, bills by ``(bill_no, store_id)``.
Every write commits on its own so one bad bill never rolls back the ones
persisted before it.
"""
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.sales.models import BillDetailModel, BillModel, CustomerModel, StoreModel
from app.sales.pipeline.customers import is_placeholder_name
from app.sales.schemas import DraftItem

logger = logging.getLogger(__name__)


class BillRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # ---------------------------------------------------------------------
    # Customers / stores
    # ---------------------------------------------------------------------

    def upsert_customer(self, phone: str, name: str, is_cashlist: bool = False) -> CustomerModel:
        """Return the customer for *phone*, creating it when absent.

        An existing name is replaced only by a real name on a real phone;
        the sentinel row keeps whatever name it was created with.
        """
        customer = self.session.query(CustomerModel).filter(CustomerModel.phone == phone).first()
        if customer is not None:
            if not customer.is_cashlist and not is_cashlist and not is_placeholder_name(name) \
                    and customer.name != name:
                logger.debug("Renaming customer %s: %r -> %r", phone, customer.name, name)
                customer.name = name
                self.session.commit()
            return customer

        customer = CustomerModel(name=name, phone=phone, is_cashlist=is_cashlist)
        self.session.add(customer)
        try:
            self.session.commit()
        except IntegrityError:
            # another worker inserted the same phone first
            self.session.rollback()
            return self.session.query(CustomerModel).filter(CustomerModel.phone == phone).one()
        return customer

    def upsert_store(
        self,
        store_name: str,
        address: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> StoreModel:
        """Return the store called *store_name*; blank contact fields are filled in."""
        store = self.session.query(StoreModel).filter(StoreModel.store_name == store_name).first()
        if store is not None:
            changed = False
            for attr, value in (("address", address), ("phone", phone), ("email", email)):
                if value and not getattr(store, attr):
                    setattr(store, attr, value)
                    changed = True
            if changed:
                self.session.commit()
            return store

        store = StoreModel(store_name=store_name, address=address, phone=phone, email=email)
        self.session.add(store)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return self.session.query(StoreModel).filter(StoreModel.store_name == store_name).one()
        return store

    # ---------------------------------------------------------------------
    # Bills
    # ---------------------------------------------------------------------

    def find_bill(self, bill_no: str, store_id: int) -> Optional[BillModel]:
        return (
            self.session.query(BillModel)
            .filter(BillModel.bill_no == bill_no, BillModel.store_id == store_id)
            .first()
        )

    def create_bill(
        self,
        *,
        bill_no: str,
        store_id: int,
        customer_id: int,
        date: dt.date,
        is_return: bool,
        payment_type: str,
        net_amount: Decimal,
        net_discount: Decimal,
        amount_paid: Decimal,
        credit_amount: Decimal,
        items: list[DraftItem],
        job_id: Optional[str] = None,
    ) -> BillModel:
        """Insert a bill with its details in one transaction.

        Raises ``IntegrityError`` (after rolling back) when the key already exists.
        """
        bill = BillModel(
            bill_no=bill_no,
            store_id=store_id,
            customer_id=customer_id,
            date=date,
            is_return=is_return,
            payment_type=payment_type,
            net_amount=net_amount,
            net_discount=net_discount,
            amount_paid=amount_paid,
            credit_amount=credit_amount,
            is_uploaded=True,
            job_id=job_id,
        )
        bill.details = [
            BillDetailModel(
                position=pos,
                item=item.name,
                quantity=item.quantity,
                batch=item.batch,
                exp_batch=item.expiry,
                mrp=item.unit_price,
                discount=item.discount,
            )
            for pos, item in enumerate(items)
        ]
        self.session.add(bill)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise
        return bill
