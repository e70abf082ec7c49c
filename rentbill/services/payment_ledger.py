# FILE: rentbill/services/payment_ledger.py
"""
Payments against invoices and the invoice aggregates they drive.

Every mutation runs in one transaction with the invoice row locked
(SELECT ... FOR UPDATE), then re-derives from the ACTIVE payments:

  payment_received = sum(active payments)
  balance_due      = max(0, total_amount - payment_received)
  status           = paid | overdue (past due_date) | partial | pending
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentbill.core.config import settings
from rentbill.core.errors import (
    BillingError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
    is_transient_store_error,
)
from rentbill.models.billing import Invoice, InvoiceStatus, Payment, PaymentMethod
from rentbill.services.billing_math import ZERO, money2
from rentbill.utils.timezone import local_today

logger = logging.getLogger(__name__)


def derive_status(total_amount,
                  payment_received,
                  due_date: Optional[date],
                  today: date) -> InvoiceStatus:
    total = money2(total_amount)
    received = money2(payment_received)
    balance = max(ZERO, total - received)

    if balance == 0:
        return InvoiceStatus.paid
    if due_date is not None and today > due_date:
        return InvoiceStatus.overdue
    if received > 0:
        return InvoiceStatus.partial
    return InvoiceStatus.pending


@contextmanager
def _unit_of_work(db: Session, what: str) -> Iterator[None]:
    try:
        yield
        db.commit()
    except BillingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        if is_transient_store_error(e):
            logger.warning("%s failed on a transient store error: %s", what, e)
            raise TransientStoreError(f"{what} failed, please retry") from e
        raise


def _lock_invoice(db: Session, invoice_id: int) -> Invoice:
    inv = (db.query(Invoice).filter(
        Invoice.id == int(invoice_id)).populate_existing().with_for_update().first())
    if not inv:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return inv


def _active_total(db: Session, invoice_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.invoice_id == int(invoice_id),
            Payment.is_active.is_(True),
        )).scalar()
    return money2(total or 0)


def recompute_invoice_aggregates(db: Session,
                                 inv: Invoice,
                                 today: Optional[date] = None) -> Invoice:
    """Refresh received / balance / status from the active payments (no commit)."""
    today = today or local_today()
    received = _active_total(db, inv.id)
    total = money2(inv.total_amount or 0)

    inv.payment_received = received
    inv.balance_due = max(ZERO, total - received)
    inv.status = derive_status(total, received, inv.due_date, today).value
    inv.updated_at = datetime.utcnow()
    db.flush()
    return inv


def _check_overpayment(inv: Invoice, new_received: Decimal) -> None:
    limit = money2(inv.total_amount or 0) + money2(
        settings.PAYMENT_OVERPAY_TOLERANCE)
    if new_received > limit:
        raise ValidationError(
            f"Payment exceeds invoice total: received {new_received} "
            f"> {money2(inv.total_amount or 0)}",
            extra={
                "invoice_id": inv.id,
                "total_amount": str(money2(inv.total_amount or 0)),
                "payment_received": str(new_received),
            },
        )


def _clean_amount(amount) -> Decimal:
    try:
        amt = money2(amount)
    except ValueError as e:
        raise ValidationError(f"Invalid amount: {e}")
    if amt <= 0:
        raise ValidationError("Payment amount must be > 0")
    return amt


def _clean_method(method) -> PaymentMethod:
    raw = method.value if isinstance(method, PaymentMethod) else str(
        method or "").strip().lower()
    try:
        return PaymentMethod(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(f"Invalid payment method '{method}' ({allowed})")


def record_payment(
    db: Session,
    invoice_id: int,
    amount,
    method,
    paid_on: Optional[date] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
    today: Optional[date] = None,
) -> Payment:
    amt = _clean_amount(amount)
    pm = _clean_method(method)
    ref = (reference or "").strip() or None
    if ref and len(ref) > 100:
        raise ValidationError("Reference must be at most 100 characters")
    today = today or local_today()

    with _unit_of_work(db, "Record payment"):
        inv = _lock_invoice(db, invoice_id)
        _check_overpayment(inv, _active_total(db, inv.id) + amt)

        pay = Payment(
            invoice_id=inv.id,
            amount=amt,
            method=pm.value,
            paid_on=paid_on or today,
            reference=ref,
            notes=notes,
            is_active=True,
            created_by=user_id,
        )
        db.add(pay)
        db.flush()
        recompute_invoice_aggregates(db, inv, today)

    db.refresh(pay)
    logger.info("Payment %s of %s recorded on invoice %s", pay.id, amt,
                invoice_id)
    return pay


def _payment_or_404(db: Session, payment_id: int) -> Payment:
    pay = db.query(Payment).filter(Payment.id == int(payment_id)).first()
    if not pay:
        raise NotFoundError(f"Payment {payment_id} not found")
    return pay


def delete_payment(db: Session,
                   payment_id: int,
                   user_id: Optional[int] = None,
                   today: Optional[date] = None) -> Payment:
    """Soft delete: the row stays (is_active=False) and can be restored."""
    today = today or local_today()

    with _unit_of_work(db, "Delete payment"):
        pay = _payment_or_404(db, payment_id)
        inv = _lock_invoice(db, pay.invoice_id)
        db.refresh(pay)
        if not pay.is_active:
            raise ConflictError(f"Payment {payment_id} is already deleted")

        pay.is_active = False
        pay.deleted_by = user_id
        pay.deleted_at = datetime.utcnow()
        db.flush()
        recompute_invoice_aggregates(db, inv, today)

    db.refresh(pay)
    logger.info("Payment %s removed from invoice %s", payment_id,
                pay.invoice_id)
    return pay


def restore_payment(db: Session,
                    payment_id: int,
                    user_id: Optional[int] = None,
                    today: Optional[date] = None) -> Payment:
    today = today or local_today()

    with _unit_of_work(db, "Restore payment"):
        pay = _payment_or_404(db, payment_id)
        inv = _lock_invoice(db, pay.invoice_id)
        db.refresh(pay)
        if pay.is_active:
            raise ConflictError(f"Payment {payment_id} is already active")

        _check_overpayment(inv, _active_total(db, inv.id) + money2(pay.amount))

        pay.is_active = True
        pay.deleted_by = None
        pay.deleted_at = None
        db.flush()
        recompute_invoice_aggregates(db, inv, today)

    db.refresh(pay)
    logger.info("Payment %s restored on invoice %s (by %s)", payment_id,
                pay.invoice_id, user_id)
    return pay


def list_payments(db: Session,
                  invoice_id: int,
                  include_inactive: bool = False) -> List[Payment]:
    exists = db.query(Invoice.id).filter(Invoice.id == int(invoice_id)).first()
    if not exists:
        raise NotFoundError(f"Invoice {invoice_id} not found")

    q = db.query(Payment).filter(Payment.invoice_id == int(invoice_id))
    if not include_inactive:
        q = q.filter(Payment.is_active.is_(True))
    return q.order_by(Payment.id.asc()).all()


def mark_overdue_invoices(db: Session, today: Optional[date] = None) -> int:
    """
    Unpaid (pending or partial) invoices past their due date -> overdue.

    Run by an external scheduler (cron / admin endpoint). Returns how many
    invoices changed.
    """
    today = today or local_today()
    changed = 0

    with _unit_of_work(db, "Mark overdue"):
        rows = (db.query(Invoice).filter(
            Invoice.status.in_((InvoiceStatus.pending.value,
                                InvoiceStatus.partial.value)),
            Invoice.due_date.isnot(None),
            Invoice.due_date < today,
        ).order_by(Invoice.id.asc()).with_for_update().all())

        for inv in rows:
            before = inv.status
            recompute_invoice_aggregates(db, inv, today)
            if inv.status != before:
                changed += 1

    logger.info("Overdue run for %s: %s invoice(s) updated", today, changed)
    return changed
