# FILE: rentbill/services/tax_calculator.py
"""
GST computation for invoice lines.

Pure functions only: no DB, no clock, no config. Same input, same output.

Per line:
  line_total = round2(qty * rate)
  line_tax   = round2(line_total * gst% / 100)

Invoice:
  subtotal    = sum(line_total)
  tax_total   = sum(line_tax)
  grand_total = round2(subtotal + tax_total)

Split:
  outlet state != customer state (both known) -> IGST = tax_total
  otherwise (same state / unknown)             -> CGST + SGST halves,
                                                  odd paisa goes to CGST
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from rentbill.core.errors import ValidationError
from rentbill.services.billing_math import D, ZERO, money2, money2_down, money_sum

# Standard GST slabs
ALLOWED_GST_RATES: Tuple[Decimal, ...] = tuple(
    Decimal(r) for r in ("0", "0.25", "3", "5", "12", "18", "28"))

_RATE_LABELS = {
    Decimal("0"): "0% (Exempt)",
    Decimal("0.25"): "0.25% (Precious metals)",
    Decimal("3"): "3% (Gold/Silver)",
    Decimal("5"): "5% (Essential goods)",
    Decimal("12"): "12% (Standard)",
    Decimal("18"): "18% (Standard)",
    Decimal("28"): "28% (Luxury)",
}


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    unit_rate: Decimal
    tax_rate_percent: Decimal
    description: str = ""


@dataclass(frozen=True)
class LineTax:
    line_total: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    tax_total: Decimal
    grand_total: Decimal
    lines: Tuple[LineTax, ...] = ()

    @property
    def is_interstate(self) -> bool:
        return self.igst > 0


def tax_rate_label(rate) -> str:
    r = D(rate).normalize()
    for k, label in _RATE_LABELS.items():
        if k == r:
            return label
    return f"{r}% (Custom)"


def _normalize_state(code: Optional[str]) -> Optional[str]:
    c = (code or "").strip().upper()
    return c or None


def is_interstate(outlet_state_code: Optional[str],
                  customer_state_code: Optional[str]) -> bool:
    a = _normalize_state(outlet_state_code)
    b = _normalize_state(customer_state_code)
    return bool(a and b and a != b)


def _validated(line: LineItem, idx: int) -> Tuple[Decimal, Decimal, Decimal]:
    try:
        qty = D(line.quantity)
        rate = D(line.unit_rate)
        gst = D(line.tax_rate_percent)
    except ValueError as e:
        raise ValidationError(f"Line {idx}: {e}", extra={"line": idx})

    if qty <= 0:
        raise ValidationError(f"Line {idx}: quantity must be > 0",
                              extra={"line": idx})
    if rate < 0:
        raise ValidationError(f"Line {idx}: rate must be >= 0",
                              extra={"line": idx})
    if gst not in ALLOWED_GST_RATES:
        raise ValidationError(
            f"Line {idx}: GST rate {gst}% is not one of "
            f"{', '.join(str(r) for r in ALLOWED_GST_RATES)}",
            extra={"line": idx})
    return qty, rate, gst


def split_tax(tax_total: Decimal, interstate: bool) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (cgst, sgst, igst); the three always add up to ``tax_total``."""
    tax_total = money2(tax_total)
    if interstate:
        return ZERO, ZERO, tax_total
    sgst = money2_down(tax_total / 2)
    cgst = tax_total - sgst
    return cgst, sgst, ZERO


def compute_line(line: LineItem, idx: int = 1) -> LineTax:
    qty, rate, gst = _validated(line, idx)
    line_total = money2(qty * rate)
    if gst == 0:
        return LineTax(line_total=line_total, tax_amount=ZERO)
    return LineTax(line_total=line_total,
                   tax_amount=money2(line_total * gst / Decimal("100")))


def compute_tax(
    lines: Iterable[LineItem],
    outlet_state_code: Optional[str] = None,
    customer_state_code: Optional[str] = None,
) -> TaxBreakdown:
    items = list(lines or [])

    # validate everything before computing anything
    for i, line in enumerate(items, start=1):
        _validated(line, i)

    results = tuple(compute_line(line, i) for i, line in enumerate(items, start=1))

    subtotal = money_sum(r.line_total for r in results)
    tax_total = money_sum(r.tax_amount for r in results)
    cgst, sgst, igst = split_tax(
        tax_total, is_interstate(outlet_state_code, customer_state_code))

    return TaxBreakdown(
        subtotal=subtotal,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
        tax_total=tax_total,
        grand_total=money2(subtotal + tax_total),
        lines=results,
    )
