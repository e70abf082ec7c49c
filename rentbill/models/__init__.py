# rentbill/models/__init__.py
from .order import Outlet, Customer, RentalOrder, RentalOrderItem
from .billing import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    NumberSource,
    Payment,
    PaymentMethod,
)
from .sequence import SequenceCounter
from .audit import InvoiceCreationAudit

__all__ = [
    "Outlet",
    "Customer",
    "RentalOrder",
    "RentalOrderItem",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    "NumberSource",
    "Payment",
    "PaymentMethod",
    "SequenceCounter",
    "InvoiceCreationAudit",
]
