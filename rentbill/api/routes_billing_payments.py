# FILE: rentbill/api/routes_billing_payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rentbill.api.deps import current_user_id, get_db
from rentbill.api.response import ok
from rentbill.models.billing import Invoice
from rentbill.schemas.billing import InvoiceOut, PaymentIn, PaymentOut
from rentbill.services.payment_ledger import (
    delete_payment,
    list_payments,
    record_payment,
    restore_payment,
)

router = APIRouter(prefix="/billing", tags=["Billing Payments"])


def _with_invoice(db: Session, pay) -> dict:
    inv = db.get(Invoice, pay.invoice_id)
    return {
        "payment": PaymentOut.model_validate(pay).model_dump(),
        "invoice": InvoiceOut.model_validate(inv).model_dump(),
    }


@router.get("/invoices/{invoice_id}/payments")
def invoice_payments(
        invoice_id: int,
        include_inactive: bool = Query(False),
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    rows = list_payments(db, invoice_id, include_inactive=include_inactive)
    return ok([PaymentOut.model_validate(p).model_dump() for p in rows])


@router.post("/invoices/{invoice_id}/payments", status_code=201)
def add_payment(
        invoice_id: int,
        inp: PaymentIn,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    pay = record_payment(
        db,
        invoice_id,
        inp.amount,
        inp.method,
        paid_on=inp.paid_on,
        reference=inp.reference,
        notes=inp.notes,
        user_id=user_id,
    )
    return ok(_with_invoice(db, pay), status_code=201)


@router.delete("/payments/{payment_id}")
def remove_payment(
        payment_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    pay = delete_payment(db, payment_id, user_id=user_id)
    return ok(_with_invoice(db, pay))


@router.post("/payments/{payment_id}/restore")
def reactivate_payment(
        payment_id: int,
        db: Session = Depends(get_db),
        user_id: int = Depends(current_user_id),
):
    pay = restore_payment(db, payment_id, user_id=user_id)
    return ok(_with_invoice(db, pay))
