# FILE: rentbill/models/sequence.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)

from rentbill.db.base import Base


class SequenceCounter(Base):
    """
    One row per (entity_type, outlet_id).

    ``last_value`` is only ever moved forward by the store's atomic
    ``UPDATE ... SET last_value = last_value + 1``. Gaps are fine, reuse is not.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (UniqueConstraint("entity_type",
                                       "outlet_id",
                                       name="uq_sequence_counters_key"), )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(32), nullable=False)  # invoice | order | payment ...
    outlet_id = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow,
                        nullable=False)
