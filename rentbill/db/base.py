# rentbill/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing tables (invoices, payments, counters, audit) inherit from this."""
    pass


def import_models() -> None:
    """Import every model module so ``Base.metadata`` is complete for create_all()."""
    from rentbill.models import (  # noqa: F401
        audit,
        billing,
        order,
        sequence,
    )
