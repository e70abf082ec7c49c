# FILE: rentbill/services/sequence_allocator.py
from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rentbill.core.config import settings
from rentbill.core.errors import AllocationError
from rentbill.models.sequence import SequenceCounter

logger = logging.getLogger(__name__)

ENTITY_INVOICE = "invoice"

ENTITY_PREFIXES = {
    "invoice": "INV",
    "order": "ORD",
    "payment": "PAY",
    "customer": "CUST",
}

INVOICE_FORMATS = ("outlet_fy", "outlet_short")

# an insert race on a brand-new key resolves after one retry; this bounds the loop
_MAX_CREATE_RACES = 5


# ----------------------------
# Allocation
# ----------------------------
def _counter_filter(entity_type: str, outlet_id: int):
    return (
        SequenceCounter.entity_type == entity_type,
        SequenceCounter.outlet_id == int(outlet_id),
    )


def _bump(db: Session, entity_type: str, outlet_id: int) -> Optional[int]:
    """
    Single atomic increment. Returns the new value, or None when the row does
    not exist yet.
    """
    stmt = (update(SequenceCounter).where(
        *_counter_filter(entity_type, outlet_id)).values(
            last_value=SequenceCounter.last_value + 1,
            updated_at=datetime.utcnow(),
        ).execution_options(synchronize_session=False))

    if db.get_bind().dialect.update_returning:
        return db.execute(
            stmt.returning(SequenceCounter.last_value)).scalar_one_or_none()

    # MySQL: no RETURNING. The UPDATE keeps the row write-locked until commit,
    # so reading it back inside the same transaction is still atomic.
    res = db.execute(stmt)
    if not res.rowcount:
        return None
    return db.execute(
        select(SequenceCounter.last_value).where(
            *_counter_filter(entity_type, outlet_id))).scalar_one()


def _floor_for(entity_type: str, floor: Optional[int]) -> int:
    if floor is not None:
        return max(0, int(floor))
    if entity_type == ENTITY_INVOICE:
        return max(0, int(settings.INVOICE_SEQUENCE_FLOOR or 0))
    return 0


def allocate(db: Session,
             entity_type: str,
             outlet_id: int,
             floor: Optional[int] = None) -> int:
    """
    Issue the next integer for (entity_type, outlet_id).

    Runs and commits its own short transaction on ``db`` (the session must
    not carry pending work). A value handed out here is never handed out
    again, even if the caller later fails; that only leaves a gap.

    ``floor`` only matters for a brand-new key: numbering starts at floor + 1
    (default: INVOICE_SEQUENCE_FLOOR for invoices, 0 otherwise).

    Raises AllocationError when the counter store cannot be reached.
    """
    et = (entity_type or "").strip().lower()
    if not et:
        raise ValueError("entity_type required")

    try:
        for _ in range(_MAX_CREATE_RACES):
            value = _bump(db, et, outlet_id)
            if value is not None:
                db.commit()
                return int(value)

            # first allocation for this key
            db.rollback()
            first = _floor_for(et, floor) + 1
            db.add(
                SequenceCounter(entity_type=et,
                                outlet_id=int(outlet_id),
                                last_value=first))
            try:
                db.commit()
                return first
            except IntegrityError:
                # someone else created the row; go back to the atomic bump
                db.rollback()
                logger.debug("Counter row race for %s/%s, retrying", et,
                             outlet_id)

        raise AllocationError(
            f"Could not create sequence counter for {et}/{outlet_id}")
    except AllocationError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Sequence allocation failed for %s/%s: %s", et,
                       outlet_id, e)
        raise AllocationError(
            f"Sequence store unavailable for {et}/{outlet_id}") from e


# ----------------------------
# Formatting
# ----------------------------
def financial_year(d: Union[date, datetime]) -> str:
    """Indian FY (April-March), e.g. 2025-26."""
    if isinstance(d, datetime):
        d = d.date()
    start = d.year if d.month >= 4 else d.year - 1
    return f"{start}-{(start + 1) % 100:02d}"


def _clean_outlet_code(outlet_code: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "", (outlet_code or "").upper())
    return cleaned or "OUT"


def format_code(
    entity_type: str,
    outlet_code: Optional[str],
    seq: int,
    date_parts: Union[date, datetime],
    fmt: Optional[str] = None,
) -> str:
    """
    Human-readable code for an allocated value.

      invoice / outlet_fy    -> INV/KOR/2025-26/0031
      invoice / outlet_short -> INV-KOR-0031
      other entities         -> ORD-KOR-007
    """
    et = (entity_type or "").strip().lower()
    out = _clean_outlet_code(outlet_code)
    n = int(seq)
    if n <= 0:
        raise ValueError("seq must be positive")

    if et == ENTITY_INVOICE:
        f = (fmt or settings.INVOICE_NUMBER_FORMAT or "outlet_fy").lower()
        if f not in INVOICE_FORMATS:
            raise ValueError(f"Unknown invoice number format: {f}")
        if f == "outlet_short":
            return f"INV-{out}-{n:04d}"
        return f"INV/{out}/{financial_year(date_parts)}/{n:04d}"

    prefix = ENTITY_PREFIXES.get(et, et.upper()[:4] or "DOC")
    return f"{prefix}-{out}-{n:03d}"


def fallback_code(entity_type: str,
                  outlet_code: Optional[str],
                  now: Optional[datetime] = None) -> str:
    """
    Timestamp-derived code for when ``allocate`` failed.

    The ``FB`` marker keeps it visibly apart from sequence codes; the record
    carrying it must also be flagged (NumberSource.fallback).
    """
    now = now or datetime.utcnow()
    et = (entity_type or "").strip().lower()
    prefix = ENTITY_PREFIXES.get(et, et.upper()[:4] or "DOC")
    return (f"{prefix}-{_clean_outlet_code(outlet_code)}-FB"
            f"{now.strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:4].upper()}")
