import os

# must be set before rentbill.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rentbill.db.base import Base, import_models
from rentbill.models import Customer, Outlet, RentalOrder, RentalOrderItem

# Scenario A lines: (qty, rate, gst %)
SCENARIO_A = [(2, "1000", 18), (1, "500", 5)]


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import_models()
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


def make_order(db,
               lines=SCENARIO_A,
               outlet_code="KOR",
               outlet_state="KA",
               customer_state="KA"):
    outlet = db.query(Outlet).filter(Outlet.code == outlet_code).first()
    if outlet is None:
        outlet = Outlet(code=outlet_code,
                        name=f"Outlet {outlet_code}",
                        state_code=outlet_state)
        db.add(outlet)
        db.flush()

    customer = Customer(name="Asha Rentals", state_code=customer_state)
    db.add(customer)
    db.flush()

    order = RentalOrder(outlet_id=outlet.id, customer_id=customer.id)
    db.add(order)
    db.flush()

    for i, (qty, rate, gst) in enumerate(lines, start=1):
        db.add(
            RentalOrderItem(
                order_id=order.id,
                seq=i,
                description=f"Item {i}",
                quantity=Decimal(str(qty)),
                rate=Decimal(str(rate)),
                gst_rate=Decimal(str(gst)),
            ))
    db.commit()
    return order.id


@pytest.fixture
def order_factory(db):

    def _make(**kw):
        return make_order(db, **kw)

    return _make
