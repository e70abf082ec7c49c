# rentbill/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP

Q2 = Decimal("0.01")
ZERO = Decimal("0.00")


def D(x) -> Decimal:
    """
    Strict Decimal conversion for money/quantity input.

    Floats go through ``str`` so 0.1 stays 0.1. Raises ``ValueError`` for
    anything that is not a finite number.
    """
    if isinstance(x, Decimal):
        d = x
    elif isinstance(x, bool) or x is None:
        raise ValueError(f"not a number: {x!r}")
    else:
        try:
            d = Decimal(str(x).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"not a number: {x!r}")
    if not d.is_finite():
        raise ValueError(f"not a finite number: {x!r}")
    return d


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def money2_down(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_DOWN)


def money_sum(values) -> Decimal:
    return money2(sum((D(v) for v in values), Decimal("0")))
