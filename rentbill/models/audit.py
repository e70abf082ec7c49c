from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from rentbill.db.base import Base


class InvoiceCreationAudit(Base):
    """
    Append-only history of invoice-creation attempts, one row per attempt.

    For an order at most one row has success=True and it is the last one.
    """
    __tablename__ = "invoice_creation_audit"
    __table_args__ = (
        UniqueConstraint("order_id",
                         "attempt_number",
                         name="uq_invoice_creation_audit_attempt"),
        Index("ix_invoice_creation_audit_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(Integer, nullable=False, index=True)
    invoice_id = Column(Integer, nullable=True, index=True)  # set on success
    outlet_id = Column(Integer, nullable=True)
    requester_id = Column(Integer, nullable=True)  # system jobs may be null

    attempt_number = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(String(200), nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
