# FILE: rentbill/services/order_provider.py
"""
Read-only view of a rental order, as the billing engine needs it.

The order tables belong to the CRM; billing only ever takes a snapshot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from rentbill.core.errors import NotFoundError, TransientStoreError, is_transient_store_error
from rentbill.models.order import RentalOrder
from rentbill.services.tax_calculator import LineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    seq: int
    description: str
    quantity: Decimal
    rate: Decimal
    gst_rate: Decimal

    def as_line_item(self) -> LineItem:
        return LineItem(
            quantity=self.quantity,
            unit_rate=self.rate,
            tax_rate_percent=self.gst_rate,
            description=self.description,
        )


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: int
    order_number: Optional[str]
    outlet_id: int
    outlet_code: str
    outlet_state_code: Optional[str]
    customer_id: int
    customer_state_code: Optional[str]
    lines: Tuple[OrderLine, ...]


class OrderProvider(Protocol):

    def get_order(self, db: Session, order_id: int) -> OrderSnapshot:
        ...


class DbOrderProvider:
    """Reads orders straight from the CRM tables in the same database."""

    def get_order(self, db: Session, order_id: int) -> OrderSnapshot:
        try:
            order = db.execute(
                select(RentalOrder).options(
                    selectinload(RentalOrder.items),
                    selectinload(RentalOrder.outlet),
                    selectinload(RentalOrder.customer),
                ).where(RentalOrder.id == int(order_id))).scalar_one_or_none()
        except SQLAlchemyError as e:
            if is_transient_store_error(e):
                raise TransientStoreError(
                    f"Order store unavailable: {e.__class__.__name__}") from e
            raise

        if not order:
            raise NotFoundError(f"Order {order_id} not found")

        outlet = order.outlet
        customer = order.customer
        lines = tuple(
            OrderLine(
                seq=int(it.seq or i),
                description=it.description,
                quantity=Decimal(str(it.quantity)),
                rate=Decimal(str(it.rate)),
                gst_rate=Decimal(str(it.gst_rate or 0)),
            ) for i, it in enumerate(order.items or [], start=1))

        return OrderSnapshot(
            order_id=int(order.id),
            order_number=order.order_number,
            outlet_id=int(order.outlet_id),
            outlet_code=(outlet.code if outlet else "") or "",
            outlet_state_code=outlet.state_code if outlet else None,
            customer_id=int(order.customer_id),
            customer_state_code=customer.state_code if customer else None,
            lines=lines,
        )
