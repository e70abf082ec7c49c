# FILE: rentbill/api/routes_billing_invoices.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session, selectinload

from rentbill.api.deps import current_user_id, get_db, get_order_provider
from rentbill.api.response import ok
from rentbill.core.errors import NotFoundError, ValidationError
from rentbill.models.billing import Invoice, InvoiceStatus, NumberSource
from rentbill.schemas.billing import (
    AuditEntryOut,
    AuditStatusOut,
    InvoiceDetailOut,
    InvoiceOut,
    LineTaxOut,
    OverdueRunIn,
    OverdueRunOut,
    TaxBreakdownOut,
    TaxPreviewIn,
)
from rentbill.services.invoice_audit import get_audit_trail, has_failed_attempts, latest_entry
from rentbill.services.invoice_creation import InvoiceCreationPipeline
from rentbill.services.order_provider import OrderProvider
from rentbill.services.payment_ledger import mark_overdue_invoices
from rentbill.services.tax_calculator import LineItem, compute_tax, tax_rate_label
from rentbill.utils.timezone import local_today

router = APIRouter(prefix="/billing", tags=["Billing Invoices"])


def _invoice_detail(db: Session, invoice_id: int) -> dict:
    inv = (db.query(Invoice).options(selectinload(Invoice.lines)).filter(
        Invoice.id == int(invoice_id)).first())
    if not inv:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return InvoiceDetailOut.model_validate(inv).model_dump()


# ---------------------------------------------------------
# Creation
# ---------------------------------------------------------
@router.post("/orders/{order_id}/invoice")
def create_order_invoice(
        order_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
        provider: OrderProvider = Depends(get_order_provider),
):
    inv = InvoiceCreationPipeline(
        db, order_provider=provider).create_invoice_for_order(order_id,
                                                             user_id)
    return ok(_invoice_detail(db, inv.id))


@router.post("/orders/{order_id}/invoice/retry")
def retry_order_invoice(
        order_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
        provider: OrderProvider = Depends(get_order_provider),
):
    inv = InvoiceCreationPipeline(
        db, order_provider=provider).recreate_invoice_for_order(order_id,
                                                               user_id)
    return ok(_invoice_detail(db, inv.id))


@router.get("/orders/{order_id}/invoice-audit")
def order_invoice_audit(
        order_id: int,
        limit: Optional[int] = Query(None, ge=1, le=500),
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    rows = get_audit_trail(db, order_id, limit=limit)
    return ok([AuditEntryOut.model_validate(r).model_dump() for r in rows])


@router.get("/orders/{order_id}/invoice-audit/status")
def order_invoice_audit_status(
        order_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    last = latest_entry(db, order_id)
    inv_id = (db.query(Invoice.id).filter(
        Invoice.order_id == int(order_id)).scalar())
    out = AuditStatusOut(
        order_id=order_id,
        has_failed_attempts=has_failed_attempts(db, order_id),
        invoice_id=inv_id,
        last_attempt=AuditEntryOut.model_validate(last) if last else None,
    )
    return ok(out.model_dump())


# ---------------------------------------------------------
# Invoices
# ---------------------------------------------------------
@router.get("/invoices/{invoice_id}")
def get_invoice(
        invoice_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    return ok(_invoice_detail(db, invoice_id))


@router.get("/invoices")
def list_invoices(
        outlet_id: Optional[int] = Query(None),
        status: Optional[str] = Query(None),
        number_source: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=500),
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    q = db.query(Invoice)
    if outlet_id is not None:
        q = q.filter(Invoice.outlet_id == int(outlet_id))
    if status:
        st = status.strip().lower()
        if st not in {s.value for s in InvoiceStatus}:
            raise ValidationError(f"Unknown invoice status '{status}'")
        q = q.filter(Invoice.status == st)
    if number_source:
        ns = number_source.strip().lower()
        if ns not in {s.value for s in NumberSource}:
            raise ValidationError(f"Unknown number source '{number_source}'")
        q = q.filter(Invoice.number_source == ns)

    rows = q.order_by(Invoice.id.desc()).limit(limit).all()
    return ok([InvoiceOut.model_validate(r).model_dump() for r in rows],
              meta={"count": len(rows)})


# ---------------------------------------------------------
# Tax preview (no persistence)
# ---------------------------------------------------------
@router.post("/tax/preview")
def tax_preview(
        inp: TaxPreviewIn,
        user_id: int = Depends(current_user_id),
):
    items = [
        LineItem(
            quantity=ln.quantity,
            unit_rate=ln.unit_rate,
            tax_rate_percent=ln.tax_rate_percent,
            description=ln.description,
        ) for ln in inp.lines
    ]
    bd = compute_tax(items,
                     outlet_state_code=inp.outlet_state_code,
                     customer_state_code=inp.customer_state_code)

    out = TaxBreakdownOut(
        subtotal=bd.subtotal,
        cgst=bd.cgst,
        sgst=bd.sgst,
        igst=bd.igst,
        tax_total=bd.tax_total,
        grand_total=bd.grand_total,
        is_interstate=bd.is_interstate,
        lines=[
            LineTaxOut(line_total=r.line_total,
                       tax_amount=r.tax_amount,
                       tax_rate_label=tax_rate_label(it.tax_rate_percent))
            for it, r in zip(items, bd.lines)
        ],
    )
    return ok(out.model_dump())


# ---------------------------------------------------------
# Overdue (invoked by an external scheduler)
# ---------------------------------------------------------
@router.post("/overdue/run")
def run_overdue(
        inp: Optional[OverdueRunIn] = Body(None),
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    today = (inp.today if inp and inp.today else None) or local_today()
    n = mark_overdue_invoices(db, today)
    return ok(OverdueRunOut(today=today, updated=n).model_dump())
