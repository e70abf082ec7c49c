# FILE: rentbill/models/billing.py
from __future__ import annotations

from datetime import datetime
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from rentbill.db.base import Base


# -----------------------------
# Enums (stored as strings)
# -----------------------------
class InvoiceStatus(str, enum.Enum):
    pending = "pending"
    partial = "partial"
    paid = "paid"
    overdue = "overdue"


class PaymentMethod(str, enum.Enum):
    cash = "cash"
    upi = "upi"
    bank_transfer = "bank_transfer"
    card = "card"
    cheque = "cheque"


class NumberSource(str, enum.Enum):
    sequence = "sequence"
    # timestamp-derived code issued while the counter store was down;
    # must be reconciled later
    fallback = "fallback"


class Invoice(Base):
    """
    One invoice per rental order.

    Header + lines are written once by the creation pipeline. Afterwards only
    the payment ledger touches ``payment_received`` / ``balance_due`` /
    ``status``. Invoices are never hard-deleted.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_outlet_status", "outlet_id", "status"),
        Index("ix_invoices_due_date", "due_date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    invoice_number = Column(String(64), unique=True, nullable=False)
    number_source = Column(String(16),
                           nullable=False,
                           default=NumberSource.sequence.value)

    order_id = Column(Integer,
                      ForeignKey("rental_orders.id"),
                      unique=True,
                      nullable=False)
    outlet_id = Column(Integer,
                       ForeignKey("outlets.id"),
                       nullable=False,
                       index=True)
    customer_id = Column(Integer,
                         ForeignKey("customers.id"),
                         nullable=False,
                         index=True)

    # jurisdiction snapshot used for the CGST/SGST vs IGST decision
    outlet_state_code = Column(String(10), nullable=True)
    customer_state_code = Column(String(10), nullable=True)

    # Totals
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    cgst = Column(Numeric(12, 2), nullable=False, default=0)
    sgst = Column(Numeric(12, 2), nullable=False, default=0)
    igst = Column(Numeric(12, 2), nullable=False, default=0)
    tax_total = Column(Numeric(12, 2), nullable=False, default=0)
    # grand total = subtotal + tax_total
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Payment aggregates (sum of ACTIVE payments)
    payment_received = Column(Numeric(12, 2), nullable=False, default=0)
    balance_due = Column(Numeric(12, 2), nullable=False, default=0)

    status = Column(String(16),
                    nullable=False,
                    default=InvoiceStatus.pending.value)

    invoice_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    lines = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        order_by="InvoiceLineItem.seq",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        order_by="Payment.id",
    )


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"
    __table_args__ = (Index("ix_invoice_line_items_invoice", "invoice_id"), )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, nullable=False, default=1)

    description = Column(String(300), nullable=False)
    # display/reporting only, no tax logic depends on it
    hsn_code = Column(String(16), nullable=True)

    quantity = Column(Numeric(10, 2), nullable=False)
    unit_rate = Column(Numeric(12, 2), nullable=False)
    # GST in %
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)

    # round2(quantity * unit_rate)
    line_total = Column(Numeric(12, 2), nullable=False)
    # round2(line_total * tax_rate / 100)
    tax_amount = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="lines")


class Payment(Base):
    """
    Payment tagged to one invoice.

    Deleting a payment is a soft delete (``is_active = False``); inactive rows
    stay for the audit trail and can be restored.
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_invoice", "invoice_id", "is_active"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("invoices.id"),
        nullable=False,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String(32), nullable=False)
    paid_on = Column(Date, nullable=False)
    reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_by = Column(Integer, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    invoice = relationship("Invoice", back_populates="payments")
