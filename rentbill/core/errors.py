# FILE: rentbill/core/errors.py
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import (
    DBAPIError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)


class BillingError(Exception):
    """
    Base of the billing error taxonomy.

    Callers branch on the subclass (or on ``code`` over HTTP), never on the
    message text.
    """
    code = "billing_error"
    status_code = 400

    def __init__(self,
                 msg: str,
                 status_code: Optional[int] = None,
                 extra: Optional[dict] = None):
        super().__init__(msg)
        self.msg = msg
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra


class ValidationError(BillingError):
    """Malformed or out-of-range input. Rejected before persistence."""
    code = "validation_error"
    status_code = 422


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class ConflictError(BillingError):
    """The target already exists / is already in the requested state."""
    code = "conflict"
    status_code = 409

    def __init__(self, msg: str, *, existing: Any = None, **kw):
        super().__init__(msg, **kw)
        self.existing = existing


class TransientStoreError(BillingError):
    """Store timeout or connectivity failure. Safe to retry."""
    code = "transient_store_error"
    status_code = 503


class AllocationError(BillingError):
    """Sequence counter store unavailable."""
    code = "allocation_error"
    status_code = 503


class CreationFailedError(BillingError):
    """Invoice creation retries exhausted."""
    code = "creation_failed"
    status_code = 503

    def __init__(self, order_id: int, attempts: int,
                 last_error: Optional[BaseException]):
        super().__init__(
            f"Invoice creation failed for order {order_id} after {attempts} attempts",
            extra={
                "order_id": order_id,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
        )
        self.order_id = order_id
        self.attempts = attempts
        self.last_error = last_error


def is_transient_store_error(exc: BaseException) -> bool:
    """
    True for failures where the same unit of work may succeed if repeated:
    lost connections, lock wait timeouts, pool exhaustion.
    """
    if isinstance(exc, TransientStoreError):
        return True
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def short_message(exc: BaseException, max_len: int = 200) -> str:
    """One-line, length-capped description of ``exc`` (never a traceback)."""
    text = " ".join(str(exc).split()) or type(exc).__name__
    text = f"{type(exc).__name__}: {text}"
    if len(text) <= max_len:
        return text
    return text[:max_len - 3].rstrip() + "..."
