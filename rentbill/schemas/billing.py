# FILE: rentbill/schemas/billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rentbill.models.billing import PaymentMethod


# -----------------------------
# Tax preview
# -----------------------------
class TaxLineIn(BaseModel):
    description: str = ""
    quantity: Decimal
    unit_rate: Decimal
    tax_rate_percent: Decimal = Decimal("0")


class TaxPreviewIn(BaseModel):
    lines: List[TaxLineIn] = Field(default_factory=list)
    outlet_state_code: Optional[str] = None
    customer_state_code: Optional[str] = None


class LineTaxOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_total: Decimal
    tax_amount: Decimal
    tax_rate_label: Optional[str] = None


class TaxBreakdownOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    tax_total: Decimal
    grand_total: Decimal
    is_interstate: bool
    lines: List[LineTaxOut] = Field(default_factory=list)


# -----------------------------
# Invoices
# -----------------------------
class InvoiceLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    seq: int
    description: str
    hsn_code: Optional[str] = None
    quantity: Decimal
    unit_rate: Decimal
    tax_rate: Decimal
    line_total: Decimal
    tax_amount: Decimal


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    number_source: str
    order_id: int
    outlet_id: int
    customer_id: int
    subtotal: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    tax_total: Decimal
    total_amount: Decimal
    payment_received: Decimal
    balance_due: Decimal
    status: str
    invoice_date: date
    due_date: Optional[date] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


class InvoiceDetailOut(InvoiceOut):
    lines: List[InvoiceLineOut] = Field(default_factory=list)


# -----------------------------
# Payments
# -----------------------------
class PaymentIn(BaseModel):
    amount: Decimal
    method: PaymentMethod = PaymentMethod.cash
    paid_on: Optional[date] = None
    reference: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _amount_positive(cls, v: Decimal) -> Decimal:
        if v is None or v <= 0:
            raise ValueError("amount must be > 0")
        return v


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    amount: Decimal
    method: str
    paid_on: date
    reference: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    deleted_by: Optional[int] = None
    deleted_at: Optional[datetime] = None


# -----------------------------
# Creation audit
# -----------------------------
class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    invoice_id: Optional[int] = None
    outlet_id: Optional[int] = None
    requester_id: Optional[int] = None
    attempt_number: int
    success: bool
    error_message: Optional[str] = None
    # ORM attribute is ``meta`` (``metadata`` is reserved on declarative models)
    metadata: Optional[Dict[str, Any]] = Field(default=None,
                                               validation_alias="meta")
    created_at: datetime


class AuditStatusOut(BaseModel):
    order_id: int
    has_failed_attempts: bool
    invoice_id: Optional[int] = None
    last_attempt: Optional[AuditEntryOut] = None


class OverdueRunIn(BaseModel):
    today: Optional[date] = None


class OverdueRunOut(BaseModel):
    today: date
    updated: int
