# FILE: rentbill/models/order.py
"""
Order-side tables owned by the rental CRM (outlets, customers, orders).

The billing engine only reads these through ``DbOrderProvider``; their CRUD
lives outside this package.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from rentbill.db.base import Base


class Outlet(Base):
    __tablename__ = "outlets"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), nullable=False, unique=True)
    name = Column(String(150), nullable=False)
    # GST state code, e.g. "KA" / "29"
    state_code = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    state_code = Column(String(10), nullable=True)
    gstin = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class RentalOrder(Base):
    __tablename__ = "rental_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), nullable=True, unique=True)
    outlet_id = Column(Integer, ForeignKey("outlets.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    outlet = relationship("Outlet")
    customer = relationship("Customer")
    items = relationship(
        "RentalOrderItem",
        back_populates="order",
        order_by="RentalOrderItem.seq",
    )


class RentalOrderItem(Base):
    __tablename__ = "rental_order_items"
    __table_args__ = (Index("ix_rental_order_items_order", "order_id"), )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer,
                      ForeignKey("rental_orders.id", ondelete="CASCADE"),
                      nullable=False)
    seq = Column(Integer, default=1)
    description = Column(String(300), nullable=False)
    quantity = Column(Numeric(10, 2), nullable=False)
    rate = Column(Numeric(12, 2), nullable=False)
    gst_rate = Column(Numeric(5, 2), nullable=False, default=0)

    order = relationship("RentalOrder", back_populates="items")
