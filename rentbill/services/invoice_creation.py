# FILE: rentbill/services/invoice_creation.py
"""
Order -> invoice pipeline.

Per attempt:
  guard (invoice already there? return it)
  -> order snapshot -> tax -> invoice number -> persist (header + lines +
     success audit row, one transaction)

Transient store failures are rolled back, audited and retried with
exponential backoff. Validation problems are raised straight away.
"""
from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rentbill.core.config import settings
from rentbill.core.errors import (
    AllocationError,
    ConflictError,
    CreationFailedError,
    NotFoundError,
    ValidationError,
    is_transient_store_error,
)
from rentbill.models.billing import Invoice, InvoiceLineItem, NumberSource
from rentbill.services.invoice_audit import append_audit_entry
from rentbill.services.order_provider import DbOrderProvider, OrderProvider, OrderSnapshot
from rentbill.services.payment_ledger import derive_status
from rentbill.services.sequence_allocator import (
    ENTITY_INVOICE,
    allocate,
    fallback_code,
    format_code,
)
from rentbill.services.tax_calculator import TaxBreakdown, compute_tax
from rentbill.utils.timezone import local_now

logger = logging.getLogger(__name__)

TRIGGER_CREATE = "create"
TRIGGER_RETRY = "retry"

POLICY_FLAG = "flag"
POLICY_BLOCK = "block"


# unique keys whose collisions clear on the next attempt (fresh number,
# fresh attempt_number); any other integrity failure is deterministic
_RETRYABLE_UNIQUE_KEYS = (
    "invoice_number",
    "attempt_number",
    "uq_invoice_creation_audit_attempt",
)


def _is_retryable_integrity_error(exc: IntegrityError) -> bool:
    text = str(getattr(exc, "orig", None) or exc).lower()
    if "unique" not in text and "duplicate" not in text:
        return False
    return any(key in text for key in _RETRYABLE_UNIQUE_KEYS)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, AllocationError):
        return True
    if isinstance(exc, IntegrityError):
        return _is_retryable_integrity_error(exc)
    return is_transient_store_error(exc)


class InvoiceCreationPipeline:

    def __init__(
        self,
        db: Session,
        *,
        order_provider: Optional[OrderProvider] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        allow_fallback: Optional[bool] = None,
        sleep: Callable[[float], Any] = time.sleep,
        now: Callable[[], datetime] = local_now,
    ):
        self.db = db
        self.order_provider = order_provider or DbOrderProvider()
        self.max_attempts = max(
            1, int(max_attempts or settings.INVOICE_CREATE_MAX_ATTEMPTS))
        self.backoff_ms = int(settings.INVOICE_CREATE_BACKOFF_MS
                              if backoff_ms is None else backoff_ms)
        self.allow_fallback = (settings.INVOICE_ALLOW_FALLBACK_NUMBER
                               if allow_fallback is None else allow_fallback)
        self.sleep = sleep
        self.now = now

    # ----------------------------
    # Public
    # ----------------------------
    def create_invoice_for_order(self,
                                 order_id: int,
                                 requester_id: Optional[int] = None) -> Invoice:
        return self._run(int(order_id), requester_id, TRIGGER_CREATE)

    def recreate_invoice_for_order(self,
                                   order_id: int,
                                   requester_id: Optional[int] = None) -> Invoice:
        """Manual retry. Returns the existing invoice if one was created meanwhile."""
        return self._run(int(order_id), requester_id, TRIGGER_RETRY)

    # ----------------------------
    # Loop
    # ----------------------------
    def _backoff_delay(self, attempt: int) -> float:
        return self.backoff_ms * (2**(attempt - 1)) / 1000.0

    def _existing_invoice(self, order_id: int) -> Optional[Invoice]:
        return self.db.execute(
            select(Invoice).where(
                Invoice.order_id == order_id)).scalar_one_or_none()

    def _run(self, order_id: int, requester_id: Optional[int],
             trigger: str) -> Invoice:
        last_error: Optional[BaseException] = None

        for n in range(1, self.max_attempts + 1):
            ctx: Dict[str, Any] = {"trigger": trigger, "attempt_in_run": n}
            try:
                existing = self._existing_invoice(order_id)
                if existing is not None:
                    logger.info(
                        "Invoice %s already exists for order %s, nothing to do",
                        existing.invoice_number, order_id)
                    return existing
                return self._attempt(order_id, requester_id, ctx)

            except (ValidationError, NotFoundError):
                self.db.rollback()
                raise

            except ConflictError as e:
                self.db.rollback()
                logger.info("Order %s was invoiced concurrently (%s)",
                            order_id, e.existing.invoice_number)
                return e.existing

            except Exception as e:
                self.db.rollback()
                if not _is_retryable(e):
                    raise
                last_error = e
                logger.warning(
                    "Invoice creation attempt %s/%s failed for order %s: %s",
                    n, self.max_attempts, order_id, e)
                existing = self._record_failure(order_id, requester_id, ctx, e)
                if existing is not None:
                    logger.info("Order %s was invoiced concurrently (%s)",
                                order_id, existing.invoice_number)
                    return existing
                if n < self.max_attempts:
                    self.sleep(self._backoff_delay(n))

        logger.error("Invoice creation for order %s exhausted %s attempts",
                     order_id, self.max_attempts)
        raise CreationFailedError(order_id, self.max_attempts, last_error)

    # ----------------------------
    # One attempt
    # ----------------------------
    def _attempt(self, order_id: int, requester_id: Optional[int],
                 ctx: Dict[str, Any]) -> Invoice:
        snap = self.order_provider.get_order(self.db, order_id)
        ctx["outlet_id"] = snap.outlet_id

        breakdown = compute_tax(
            [ln.as_line_item() for ln in snap.lines],
            outlet_state_code=snap.outlet_state_code,
            customer_state_code=snap.customer_state_code,
        )

        invoice_number, source = self._invoice_number(snap)
        ctx["number_source"] = source.value
        ctx["invoice_number"] = invoice_number

        try:
            inv = self._persist_invoice(snap, breakdown, invoice_number,
                                        source, requester_id, ctx)
        except IntegrityError:
            self.db.rollback()
            existing = self._existing_invoice(order_id)
            if existing is not None:
                raise ConflictError(
                    f"Order {order_id} already has invoice {existing.invoice_number}",
                    existing=existing)
            raise

        logger.info("Invoice %s created for order %s (attempt %s, %s)",
                    inv.invoice_number, order_id, ctx["attempt_in_run"],
                    source.value)
        return inv

    def _invoice_number(self, snap: OrderSnapshot):
        now = self.now()
        try:
            seq = allocate(self.db, ENTITY_INVOICE, snap.outlet_id)
        except AllocationError:
            if not self.allow_fallback:
                raise
            code = fallback_code(ENTITY_INVOICE, snap.outlet_code, now)
            logger.warning(
                "Sequence store unavailable for outlet %s, issuing fallback number %s",
                snap.outlet_id, code)
            return code, NumberSource.fallback
        return format_code(ENTITY_INVOICE, snap.outlet_code, seq,
                           now), NumberSource.sequence

    def _persist_invoice(
        self,
        snap: OrderSnapshot,
        breakdown: TaxBreakdown,
        invoice_number: str,
        source: NumberSource,
        requester_id: Optional[int],
        ctx: Dict[str, Any],
    ) -> Invoice:
        db = self.db
        invoice_date: date = self.now().date()
        due_date = invoice_date + timedelta(
            days=int(settings.INVOICE_PAYMENT_TERMS_DAYS))

        inv = Invoice(
            invoice_number=invoice_number,
            number_source=source.value,
            order_id=snap.order_id,
            outlet_id=snap.outlet_id,
            customer_id=snap.customer_id,
            outlet_state_code=snap.outlet_state_code,
            customer_state_code=snap.customer_state_code,
            subtotal=breakdown.subtotal,
            cgst=breakdown.cgst,
            sgst=breakdown.sgst,
            igst=breakdown.igst,
            tax_total=breakdown.tax_total,
            total_amount=breakdown.grand_total,
            payment_received=0,
            balance_due=breakdown.grand_total,
            status=derive_status(breakdown.grand_total, 0, due_date,
                                 invoice_date).value,
            invoice_date=invoice_date,
            due_date=due_date,
            created_by=requester_id,
        )
        db.add(inv)
        db.flush()

        for ln, res in zip(snap.lines, breakdown.lines):
            db.add(
                InvoiceLineItem(
                    invoice_id=inv.id,
                    seq=ln.seq,
                    description=ln.description,
                    hsn_code=settings.DEFAULT_HSN_CODE,
                    quantity=ln.quantity,
                    unit_rate=ln.rate,
                    tax_rate=ln.gst_rate,
                    line_total=res.line_total,
                    tax_amount=res.tax_amount,
                ))

        append_audit_entry(
            db,
            order_id=snap.order_id,
            success=True,
            invoice_id=inv.id,
            outlet_id=snap.outlet_id,
            requester_id=requester_id,
            metadata=ctx,
            commit=False,
        )
        db.commit()
        db.refresh(inv)
        return inv

    def _record_failure(self, order_id: int, requester_id: Optional[int],
                        ctx: Dict[str, Any],
                        exc: BaseException) -> Optional[Invoice]:
        """
        Audit a failed attempt, unless another caller has invoiced the order
        meanwhile (its success row must stay the last one); that invoice is
        returned instead. A clash on attempt_number is re-read and retried.
        """
        meta = dict(ctx)
        meta["error_kind"] = type(exc).__name__
        for _ in range(3):
            try:
                existing = self._existing_invoice(order_id)
                if existing is not None:
                    return existing
                append_audit_entry(
                    self.db,
                    order_id=order_id,
                    success=False,
                    outlet_id=ctx.get("outlet_id"),
                    requester_id=requester_id,
                    error=exc,
                    metadata=meta,
                )
                return None
            except IntegrityError:
                self.db.rollback()
            except SQLAlchemyError:
                # the store is already struggling; the retry loop goes on
                self.db.rollback()
                logger.exception(
                    "Could not write failed-attempt audit for order %s",
                    order_id)
                return None
        logger.error("Failed-attempt audit for order %s kept clashing, not written",
                     order_id)
        return None


# ----------------------------
# Module-level entry points
# ----------------------------
def create_invoice_for_order(db: Session,
                             order_id: int,
                             requester_id: Optional[int] = None,
                             **kw) -> Invoice:
    return InvoiceCreationPipeline(db, **kw).create_invoice_for_order(
        order_id, requester_id)


def recreate_invoice_for_order(db: Session,
                               order_id: int,
                               requester_id: Optional[int] = None,
                               **kw) -> Invoice:
    return InvoiceCreationPipeline(db, **kw).recreate_invoice_for_order(
        order_id, requester_id)


def handle_order_created(db: Session,
                         order_id: int,
                         requester_id: Optional[int] = None,
                         policy: Optional[str] = None,
                         **kw) -> Optional[Invoice]:
    """
    Hook for the order-creation flow.

    ``flag`` (default): a failed creation is logged and left in the audit
    trail for a manual retry; the order stays valid and None is returned.
    ``block``: CreationFailedError is re-raised so the order flow aborts.
    """
    pol = (policy or settings.INVOICE_FAILURE_POLICY or POLICY_FLAG).lower()
    if pol not in (POLICY_FLAG, POLICY_BLOCK):
        raise ValueError(f"Unknown invoice failure policy: {pol}")
    try:
        return create_invoice_for_order(db, order_id, requester_id, **kw)
    except CreationFailedError:
        if pol == POLICY_BLOCK:
            raise
        logger.error(
            "Order %s saved without invoice; flagged for manual retry",
            order_id)
        return None
