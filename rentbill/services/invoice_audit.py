# FILE: rentbill/services/invoice_audit.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rentbill.core.config import settings
from rentbill.core.errors import short_message
from rentbill.models.audit import InvoiceCreationAudit
from rentbill.models.billing import Invoice

# stored messages never exceed the column width
_ERROR_COLUMN_LEN = InvoiceCreationAudit.__table__.c.error_message.type.length


def next_attempt_number(db: Session, order_id: int) -> int:
    current = db.execute(
        select(func.max(InvoiceCreationAudit.attempt_number)).where(
            InvoiceCreationAudit.order_id == int(order_id))).scalar()
    return int(current or 0) + 1


def _error_text(error: Any) -> Optional[str]:
    if error is None:
        return None
    max_len = min(int(settings.AUDIT_ERROR_MAX_LEN or _ERROR_COLUMN_LEN),
                  _ERROR_COLUMN_LEN)
    if isinstance(error, BaseException):
        return short_message(error, max_len)
    text = " ".join(str(error).split())
    return text if len(text) <= max_len else text[:max_len - 3] + "..."


def append_audit_entry(
    db: Session,
    *,
    order_id: int,
    success: bool,
    invoice_id: Optional[int] = None,
    outlet_id: Optional[int] = None,
    requester_id: Optional[int] = None,
    error: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> InvoiceCreationAudit:
    """
    Append one attempt to the order's creation history.

    With ``commit=False`` the row only joins the caller's transaction (the
    success row is written together with the invoice). Errors propagate;
    callers decide whether a failed audit write matters.
    """
    entry = InvoiceCreationAudit(
        order_id=int(order_id),
        invoice_id=invoice_id,
        outlet_id=outlet_id,
        requester_id=requester_id,
        attempt_number=next_attempt_number(db, order_id),
        success=bool(success),
        error_message=None if success else _error_text(error),
        meta=dict(metadata or {}),
    )
    db.add(entry)
    if commit:
        db.commit()
        db.refresh(entry)
    else:
        db.flush()
    return entry


def get_audit_trail(db: Session,
                    order_id: int,
                    limit: Optional[int] = None) -> List[InvoiceCreationAudit]:
    """
    Attempts for the order, oldest first. With ``limit`` only the most recent
    ``limit`` entries are returned, still oldest first.
    """
    q = select(InvoiceCreationAudit).where(
        InvoiceCreationAudit.order_id == int(order_id))
    if limit is not None:
        if int(limit) <= 0:
            return []
        rows = db.execute(
            q.order_by(InvoiceCreationAudit.attempt_number.desc()).limit(
                int(limit))).scalars().all()
        return list(reversed(rows))
    return list(
        db.execute(q.order_by(
            InvoiceCreationAudit.attempt_number.asc())).scalars().all())


def latest_entry(db: Session, order_id: int) -> Optional[InvoiceCreationAudit]:
    return db.execute(
        select(InvoiceCreationAudit).where(
            InvoiceCreationAudit.order_id == int(order_id)).order_by(
                InvoiceCreationAudit.attempt_number.desc()).limit(
                    1)).scalar_one_or_none()


def has_failed_attempts(db: Session, order_id: int) -> bool:
    """Latest attempt failed and the order still has no invoice."""
    last = latest_entry(db, order_id)
    if last is None or last.success:
        return False
    invoice_id = db.execute(
        select(Invoice.id).where(
            Invoice.order_id == int(order_id))).scalar_one_or_none()
    return invoice_id is None
