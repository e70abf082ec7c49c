from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from rentbill.core.errors import (
    AllocationError,
    CreationFailedError,
    NotFoundError,
    ValidationError,
)
from rentbill.models import Invoice, InvoiceCreationAudit
from rentbill.services import invoice_creation
from rentbill.services.invoice_audit import get_audit_trail, has_failed_attempts
from rentbill.services.invoice_creation import (
    InvoiceCreationPipeline,
    handle_order_created,
)

NOW = datetime(2025, 5, 1, 10, 30)


def _pipeline(db, **kw):
    kw.setdefault("sleep", lambda s: None)
    kw.setdefault("now", lambda: NOW)
    return InvoiceCreationPipeline(db, **kw)


def _lock_timeout():
    return OperationalError("INSERT INTO invoices", {},
                            Exception("Lock wait timeout exceeded"))


@pytest.fixture
def flaky_persist(monkeypatch):
    """Make _persist_invoice fail the first ``n`` calls."""

    def install(n):
        calls = {"n": 0}
        real_persist = InvoiceCreationPipeline._persist_invoice

        def flaky(self, *a, **kw):
            calls["n"] += 1
            if calls["n"] <= n:
                raise _lock_timeout()
            return real_persist(self, *a, **kw)

        monkeypatch.setattr(InvoiceCreationPipeline, "_persist_invoice", flaky)
        return calls

    return install


def test_creates_invoice_with_lines_and_audit(db, order_factory):
    order_id = order_factory()

    inv = _pipeline(db).create_invoice_for_order(order_id, requester_id=7)

    assert inv.invoice_number == "INV/KOR/2025-26/0001"
    assert inv.number_source == "sequence"
    assert inv.subtotal == Decimal("2500.00")
    assert inv.cgst == Decimal("192.50")
    assert inv.sgst == Decimal("192.50")
    assert inv.igst == Decimal("0.00")
    assert inv.tax_total == Decimal("385.00")
    assert inv.total_amount == Decimal("2885.00")
    assert inv.balance_due == Decimal("2885.00")
    assert inv.payment_received == Decimal("0.00")
    assert inv.status == "pending"
    assert inv.invoice_date == date(2025, 5, 1)
    assert inv.due_date == date(2025, 5, 16)
    assert inv.created_by == 7

    assert [(ln.seq, ln.line_total, ln.tax_amount, ln.hsn_code) for ln in inv.lines] == [
        (1, Decimal("2000.00"), Decimal("360.00"), "9985"),
        (2, Decimal("500.00"), Decimal("25.00"), "9985"),
    ]

    trail = get_audit_trail(db, order_id)
    assert len(trail) == 1
    assert trail[0].success is True
    assert trail[0].invoice_id == inv.id
    assert trail[0].requester_id == 7
    assert trail[0].meta["trigger"] == "create"
    assert trail[0].meta["invoice_number"] == inv.invoice_number


def test_interstate_order_gets_igst(db, order_factory):
    order_id = order_factory(customer_state="MH")
    inv = _pipeline(db).create_invoice_for_order(order_id)
    assert inv.igst == Decimal("385.00")
    assert inv.cgst == Decimal("0.00") and inv.sgst == Decimal("0.00")
    assert inv.total_amount == Decimal("2885.00")


def test_second_call_is_a_no_op(db, order_factory):
    order_id = order_factory()
    first = _pipeline(db).create_invoice_for_order(order_id)
    again = _pipeline(db).create_invoice_for_order(order_id)
    retried = _pipeline(db).recreate_invoice_for_order(order_id)

    assert again.id == first.id == retried.id
    assert db.query(Invoice).count() == 1
    assert len(get_audit_trail(db, order_id)) == 1


def test_numbers_are_per_outlet(db, order_factory):
    a = _pipeline(db).create_invoice_for_order(order_factory())
    b = _pipeline(db).create_invoice_for_order(order_factory())
    c = _pipeline(db).create_invoice_for_order(order_factory(outlet_code="BLR"))
    assert a.invoice_number.endswith("/0001")
    assert b.invoice_number.endswith("/0002")
    assert c.invoice_number == "INV/BLR/2025-26/0001"


def test_transient_failures_are_retried(db, order_factory, flaky_persist):
    order_id = order_factory()
    flaky_persist(2)
    sleeps = []

    inv = _pipeline(db, sleep=sleeps.append).create_invoice_for_order(
        order_id, requester_id=3)

    assert inv.total_amount == Decimal("2885.00")
    assert inv.cgst == Decimal("192.50") and inv.sgst == Decimal("192.50")
    # numbers taken by failed attempts are gaps, never reused
    assert inv.invoice_number.endswith("/0003")
    assert sleeps == [0.4, 0.8]

    trail = get_audit_trail(db, order_id)
    assert [e.attempt_number for e in trail] == [1, 2, 3]
    assert [e.success for e in trail] == [False, False, True]
    assert trail[0].invoice_id is None
    assert trail[0].error_message.startswith("OperationalError")
    assert len(trail[0].error_message) <= 200
    assert trail[0].meta["error_kind"] == "OperationalError"
    assert trail[1].meta["attempt_in_run"] == 2
    assert not has_failed_attempts(db, order_id)


def test_exhausted_retries_raise_and_leave_no_invoice(db, order_factory,
                                                      flaky_persist):
    order_id = order_factory()
    flaky_persist(99)
    sleeps = []

    with pytest.raises(CreationFailedError) as ei:
        _pipeline(db, sleep=sleeps.append).create_invoice_for_order(order_id)

    assert ei.value.attempts == 3
    assert ei.value.order_id == order_id
    assert isinstance(ei.value.last_error, OperationalError)
    assert sleeps == [0.4, 0.8]
    assert db.query(Invoice).filter(Invoice.order_id == order_id).count() == 0

    trail = get_audit_trail(db, order_id)
    assert [e.success for e in trail] == [False, False, False]
    assert has_failed_attempts(db, order_id)


def test_manual_retry_after_failure(db, order_factory, flaky_persist,
                                    monkeypatch):
    order_id = order_factory()
    flaky_persist(99)
    with pytest.raises(CreationFailedError):
        _pipeline(db, max_attempts=2).create_invoice_for_order(order_id)

    monkeypatch.undo()
    inv = _pipeline(db).recreate_invoice_for_order(order_id, requester_id=9)

    trail = get_audit_trail(db, order_id)
    assert [e.attempt_number for e in trail] == [1, 2, 3]
    assert trail[-1].success and trail[-1].invoice_id == inv.id
    assert trail[-1].meta["trigger"] == "retry"
    assert not has_failed_attempts(db, order_id)


def test_allocation_failure_uses_flagged_fallback(db, order_factory,
                                                  monkeypatch):

    def down(*a, **kw):
        raise AllocationError("Sequence store unavailable")

    monkeypatch.setattr(invoice_creation, "allocate", down)
    order_id = order_factory()

    inv = _pipeline(db).create_invoice_for_order(order_id)

    assert inv.number_source == "fallback"
    assert inv.invoice_number.startswith("INV-KOR-FB20250501103000")
    trail = get_audit_trail(db, order_id)
    assert trail[-1].meta["number_source"] == "fallback"


def test_allocation_failure_without_fallback_is_retried(db, order_factory,
                                                        monkeypatch):

    def down(*a, **kw):
        raise AllocationError("Sequence store unavailable")

    monkeypatch.setattr(invoice_creation, "allocate", down)
    order_id = order_factory()

    with pytest.raises(CreationFailedError):
        _pipeline(db, allow_fallback=False).create_invoice_for_order(order_id)

    trail = get_audit_trail(db, order_id)
    assert len(trail) == 3
    assert {e.meta["error_kind"] for e in trail} == {"AllocationError"}


def test_invalid_order_is_not_retried_or_audited(db, order_factory):
    order_id = order_factory(lines=[(1, "100", 7)])
    sleeps = []

    with pytest.raises(ValidationError):
        _pipeline(db, sleep=sleeps.append).create_invoice_for_order(order_id)

    assert sleeps == []
    assert db.query(InvoiceCreationAudit).count() == 0
    assert db.query(Invoice).count() == 0


def test_unknown_order(db):
    with pytest.raises(NotFoundError):
        _pipeline(db).create_invoice_for_order(404)
    assert db.query(InvoiceCreationAudit).count() == 0


def test_concurrent_winner_is_returned(db, order_factory, monkeypatch):
    order_id = order_factory()
    real_persist = InvoiceCreationPipeline._persist_invoice

    def lose_race(self, snap, breakdown, number, source, requester_id, ctx):
        # another worker commits its invoice for the same order first
        real_persist(self, snap, breakdown, "INV/KOR/2025-26/9999", source, 42,
                 dict(ctx, worker="other"))
        raise IntegrityError("INSERT INTO invoices", {},
                             Exception("UNIQUE constraint failed: invoices.order_id"))

    monkeypatch.setattr(InvoiceCreationPipeline, "_persist_invoice", lose_race)

    inv = _pipeline(db).create_invoice_for_order(order_id)

    assert inv.invoice_number == "INV/KOR/2025-26/9999"
    assert db.query(Invoice).count() == 1
    # only the winner's success row; the loser's conflict is not audited
    trail = get_audit_trail(db, order_id)
    assert len(trail) == 1 and trail[0].success


def test_failure_after_concurrent_commit_returns_winner(db, order_factory,
                                                        monkeypatch):
    order_id = order_factory()
    real_persist = InvoiceCreationPipeline._persist_invoice
    calls = {"n": 0}

    def commit_then_time_out(self, snap, breakdown, number, source,
                             requester_id, ctx):
        calls["n"] += 1
        # another worker's invoice lands before this attempt's error surfaces
        real_persist(self, snap, breakdown, "INV/KOR/2025-26/9999", source, 42,
                     dict(ctx, worker="other"))
        raise _lock_timeout()

    monkeypatch.setattr(InvoiceCreationPipeline, "_persist_invoice",
                        commit_then_time_out)
    sleeps = []

    inv = _pipeline(db, sleep=sleeps.append).create_invoice_for_order(order_id)

    assert inv.invoice_number == "INV/KOR/2025-26/9999"
    assert calls["n"] == 1 and sleeps == []
    # the winner's success row stays the last entry
    trail = get_audit_trail(db, order_id)
    assert [(e.attempt_number, e.success) for e in trail] == [(1, True)]
    assert not has_failed_attempts(db, order_id)


def test_failure_audit_survives_attempt_number_clash(db, order_factory,
                                                     flaky_persist,
                                                     monkeypatch):
    order_id = order_factory()
    flaky_persist(1)
    real_append = invoice_creation.append_audit_entry
    clashes = {"n": 0}

    def clash_once(*a, **kw):
        if not kw.get("success") and clashes["n"] == 0:
            clashes["n"] += 1
            raise IntegrityError(
                "INSERT INTO invoice_creation_audit", {},
                Exception("UNIQUE constraint failed: "
                          "invoice_creation_audit.order_id, "
                          "invoice_creation_audit.attempt_number"))
        return real_append(*a, **kw)

    monkeypatch.setattr(invoice_creation, "append_audit_entry", clash_once)

    inv = _pipeline(db).create_invoice_for_order(order_id)

    assert clashes["n"] == 1
    trail = get_audit_trail(db, order_id)
    assert [(e.attempt_number, e.success) for e in trail] == [(1, False),
                                                             (2, True)]
    assert trail[-1].invoice_id == inv.id


def test_number_collision_is_retried(db, order_factory, monkeypatch):
    order_id = order_factory()
    real_persist = InvoiceCreationPipeline._persist_invoice
    calls = {"n": 0}

    def collide_once(self, *a, **kw):
        calls["n"] += 1
        if calls["n"] == 1:
            raise IntegrityError(
                "INSERT INTO invoices", {},
                Exception("UNIQUE constraint failed: invoices.invoice_number"))
        return real_persist(self, *a, **kw)

    monkeypatch.setattr(InvoiceCreationPipeline, "_persist_invoice",
                        collide_once)

    inv = _pipeline(db).create_invoice_for_order(order_id)

    assert inv.invoice_number.endswith("/0002")
    trail = get_audit_trail(db, order_id)
    assert [e.success for e in trail] == [False, True]
    assert trail[0].meta["error_kind"] == "IntegrityError"


def test_other_integrity_errors_surface_at_once(db, order_factory,
                                                monkeypatch):
    order_id = order_factory()

    def fk_violation(self, *a, **kw):
        raise IntegrityError("INSERT INTO invoices", {},
                             Exception("FOREIGN KEY constraint failed"))

    monkeypatch.setattr(InvoiceCreationPipeline, "_persist_invoice",
                        fk_violation)
    sleeps = []

    with pytest.raises(IntegrityError):
        _pipeline(db, sleep=sleeps.append).create_invoice_for_order(order_id)

    assert sleeps == []
    assert db.query(InvoiceCreationAudit).count() == 0
    assert db.query(Invoice).count() == 0


def test_handle_order_created_flag_policy(db, order_factory, flaky_persist):
    order_id = order_factory()
    flaky_persist(99)

    result = handle_order_created(db,
                                  order_id,
                                  policy="flag",
                                  sleep=lambda s: None)

    assert result is None
    assert has_failed_attempts(db, order_id)


def test_handle_order_created_block_policy(db, order_factory, flaky_persist):
    order_id = order_factory()
    flaky_persist(99)

    with pytest.raises(CreationFailedError):
        handle_order_created(db, order_id, policy="block", sleep=lambda s: None)


def test_handle_order_created_success(db, order_factory):
    order_id = order_factory()
    inv = handle_order_created(db, order_id, now=lambda: NOW)
    assert inv is not None and inv.order_id == order_id


def test_backoff_schedule():
    p = InvoiceCreationPipeline(None, backoff_ms=400)
    assert [p._backoff_delay(n) for n in (1, 2, 3)] == [0.4, 0.8, 1.6]
