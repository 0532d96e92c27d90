import threading
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConflictError
from app.db import session as db_session
from app.models import GatewayTransaction, Invoice, Payment
from app.services import allocation
from app.services import invoice_ledger as ledger
from app.services import mpesa_callbacks as callbacks


def test_stale_copy_cannot_overwrite(db, make_invoice):
    inv = make_invoice("100.00")

    other = db_session.SessionLocal()
    try:
        stale = other.get(Invoice, inv.id)
        assert stale.version == 1

        ledger.apply_payment(db,
                             invoice_id=inv.id,
                             amount="40",
                             method="cash",
                             actor="u")

        stale.paid_amount = Decimal("70.00")
        with pytest.raises(StaleDataError):
            other.commit()
        other.rollback()
    finally:
        other.close()

    db.refresh(inv)
    assert inv.paid_amount == Decimal("40.00")


def test_concurrent_payments_do_not_lose_updates(make_invoice):
    inv = make_invoice("100.00")
    barrier = threading.Barrier(2)
    errors = []

    def pay(amount):
        s = db_session.SessionLocal()
        try:
            barrier.wait()
            ledger.apply_payment(s,
                                 invoice_id=inv.id,
                                 amount=amount,
                                 method="mobile_money",
                                 actor="t")
        except Exception as e:  # surfaced below
            errors.append(e)
        finally:
            s.close()

    threads = [
        threading.Thread(target=pay, args=("40", )),
        threading.Thread(target=pay, args=("70", )),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)

    assert errors == []

    s = db_session.SessionLocal()
    try:
        fresh = s.get(Invoice, inv.id)
        assert fresh.paid_amount == Decimal("100.00")
        assert fresh.balance_amount == Decimal("0.00")
        assert fresh.overpaid_amount == Decimal("10.00")
        assert fresh.status == "paid"
        assert s.query(Payment).filter_by(invoice_id=inv.id).count() == 2
    finally:
        s.close()


def test_stale_write_is_retried(db, make_invoice, monkeypatch):
    inv = make_invoice("100.00")
    real = ledger._apply_once
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("simulated concurrent update")
        return real(*args, **kwargs)

    monkeypatch.setattr(ledger, "_apply_once", flaky)
    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="30",
                         method="cash",
                         actor="u")

    assert calls["n"] == 2
    db.refresh(inv)
    assert inv.paid_amount == Decimal("30.00")
    assert db.query(Payment).count() == 1


def test_retries_exhausted_raise_conflict(db, make_invoice, monkeypatch):
    inv = make_invoice("100.00")

    def always_stale(*args, **kwargs):
        raise StaleDataError("simulated")

    monkeypatch.setattr(ledger, "_apply_once", always_stale)
    with pytest.raises(ConflictError):
        ledger.apply_payment(db,
                             invoice_id=inv.id,
                             amount="30",
                             method="cash",
                             actor="u",
                             max_retries=3)
    assert db.query(Payment).count() == 0


def _run_together(target, args_list):
    barrier = threading.Barrier(len(args_list))

    def go(*args):
        barrier.wait()
        target(*args)

    threads = [threading.Thread(target=go, args=a) for a in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)


def test_simultaneous_duplicate_deliveries_book_once(make_invoice):
    inv = make_invoice("100.00")
    payload = {
        "TransactionType": "Pay Bill",
        "TransID": "RKTQDM7W6S",
        "TransTime": "20250114093012",
        "TransAmount": "60.00",
        "BusinessShortCode": "174379",
        "BillRefNumber": inv.invoice_number,
        "MSISDN": "254712345678",
    }
    answers, errors = [], []

    def deliver():
        s = db_session.SessionLocal()
        try:
            answers.append(
                callbacks.handle_deposit_confirmation(s, dict(payload)))
        except Exception as e:  # surfaced below
            errors.append(e)
        finally:
            s.close()

    _run_together(deliver, [(), ()])

    assert errors == []
    assert answers == [callbacks.ACCEPTED, callbacks.ACCEPTED]

    s = db_session.SessionLocal()
    try:
        txn = s.query(GatewayTransaction).one()
        assert txn.status == "allocated"
        assert txn.allocated_invoice_id == inv.id
        pay = s.query(Payment).one()
        assert pay.gateway_transaction_id == txn.id
        fresh = s.get(Invoice, inv.id)
        assert fresh.paid_amount == Decimal("60.00")
    finally:
        s.close()


def test_simultaneous_manual_allocations_book_once(make_invoice):
    inv = make_invoice("100.00")
    s = db_session.SessionLocal()
    try:
        txn = GatewayTransaction(
            transaction_id="QWE123",
            transaction_type="Pay Bill",
            amount=Decimal("50.00"),
            bill_ref_number="BED 4",
            msisdn="254712345678",
            status="pending",
        )
        s.add(txn)
        s.commit()
        txn_id = txn.id
    finally:
        s.close()

    booked, conflicts, errors = [], [], []

    def allocate_as(actor):
        s = db_session.SessionLocal()
        try:
            booked.append(
                allocation.manual_allocate(s,
                                           transaction_id=txn_id,
                                           invoice_id=inv.id,
                                           actor=actor).id)
        except ConflictError:
            conflicts.append(actor)
        except Exception as e:  # surfaced below
            errors.append(e)
        finally:
            s.close()

    _run_together(allocate_as, [("cashier-1", ), ("cashier-2", )])

    assert errors == []
    assert len(booked) == 1
    assert len(conflicts) == 1

    s = db_session.SessionLocal()
    try:
        assert s.query(Payment).count() == 1
        assert s.get(Invoice, inv.id).paid_amount == Decimal("50.00")
    finally:
        s.close()
