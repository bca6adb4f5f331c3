"""
SQLAlchemy models for customers, stores and bills written by the ingestion pipeline.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.sales.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerModel(Base):
    """Customer, keyed by phone number."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    phone = Column(String(20), nullable=False, unique=True)
    address = Column(String)
    is_cashlist = Column(Boolean, default=False)  # sentinel-phone customer
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class StoreModel(Base):
    """Store, keyed by store name."""
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_name = Column(String, nullable=False, unique=True)
    address = Column(String)
    phone = Column(String(20))
    email = Column(String)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class BillModel(Base):
    """A sales or return transaction. The same bill_no may repeat across stores."""
    __tablename__ = "bills"
    __table_args__ = (UniqueConstraint("bill_no", "store_id", name="uq_bill_store"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    bill_no = Column(String, nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    is_return = Column(Boolean, default=False)
    payment_type = Column(String, nullable=False, default="cash")
    net_amount = Column(Numeric(12, 2), default=0)
    net_discount = Column(Numeric(12, 2), default=0)
    amount_paid = Column(Numeric(12, 2), default=0)
    credit_amount = Column(Numeric(12, 2), default=0)
    is_uploaded = Column(Boolean, default=True)
    job_id = Column(String, index=True)  # ingestion job that created the row
    created_at = Column(DateTime, default=_utcnow)

    store = relationship("StoreModel")
    customer = relationship("CustomerModel")
    details = relationship(
        "BillDetailModel",
        back_populates="bill",
        order_by="BillDetailModel.position",
        cascade="all, delete-orphan",
    )


class BillDetailModel(Base):
    """One line item of a bill."""
    __tablename__ = "bill_details"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    item = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    batch = Column(String, default="")
    exp_batch = Column(String, default="")
    mrp = Column(Numeric(12, 2), default=0)
    discount = Column(Numeric(12, 2), default=0)

    bill = relationship("BillModel", back_populates="details")
