from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.models import AuditLog, Invoice, Payment
from app.models.billing import NumberDocType, NumberResetPeriod
from app.services import invoice_ledger as ledger
from app.services.billing_numbers import make_payment_number, next_number


def _items():
    return [
        {
            "item_type": "consultation",
            "description": "Consultation",
            "quantity": 1,
            "unit_price": "1000.00",
        },
        {
            "item_type": "drug",
            "description": "Amoxicillin 500mg",
            "quantity": 2,
            "unit_price": "250.00",
            "discount": "100.00",
        },
    ]


def test_create_invoice_totals(db):
    inv = ledger.create_invoice(db,
                                patient_id="P-001",
                                items=_items(),
                                discount="60",
                                actor="cashier-1")

    # subtotal = 1000 + (500 - 100) = 1400; tax = 224; total = 1400 + 224 - 60
    assert inv.subtotal == Decimal("1400.00")
    assert inv.tax_total == Decimal("224.00")
    assert inv.discount == Decimal("60.00")
    assert inv.total_amount == Decimal("1564.00")
    assert inv.paid_amount == Decimal("0.00")
    assert inv.balance_amount == inv.total_amount
    assert inv.status == "pending"
    assert [i.line_total for i in inv.items] == [
        Decimal("1000.00"), Decimal("400.00")
    ]
    assert inv.invoice_number == f"INV-{datetime.now():%Y%m}-0001"


def test_invoice_numbers_are_sequential(make_invoice):
    a = make_invoice()
    b = make_invoice()
    assert a.invoice_number.endswith("-0001")
    assert b.invoice_number.endswith("-0002")


def test_number_series_resets_monthly(db):
    kw = dict(doc_type=NumberDocType.INVOICE,
              prefix="INV-",
              reset_period=NumberResetPeriod.MONTH)
    assert next_number(db, now=datetime(2025, 1, 31), **kw) == "INV-202501-0001"
    assert next_number(db, now=datetime(2025, 1, 31), **kw) == "INV-202501-0002"
    assert next_number(db, now=datetime(2025, 2, 1), **kw) == "INV-202502-0001"
    db.commit()


def test_payment_number_format():
    n = make_payment_number(datetime(2025, 1, 14, 9, 30, 12))
    assert n.startswith("PAY-20250114093012-")
    assert len(n.split("-")[-1]) == 8


@pytest.mark.parametrize("items", [
    [],
    [{"description": "X", "quantity": 1, "unit_price": "-1"}],
    [{"description": "X", "quantity": -1, "unit_price": "10"}],
    [{"description": "X", "quantity": 1, "unit_price": "10", "discount": "-5"}],
    [{"description": "", "quantity": 1, "unit_price": "10"}],
    [{"item_type": "massage", "description": "X", "unit_price": "10"}],
])
def test_create_invoice_rejects_bad_items(db, items):
    with pytest.raises(ValidationError):
        ledger.create_invoice(db, patient_id="P-1", items=items, actor="u")
    assert db.query(Invoice).count() == 0


def test_create_invoice_rejects_discount_beyond_total(db):
    with pytest.raises(ValidationError):
        ledger.create_invoice(db,
                              patient_id="P-1",
                              items=[{
                                  "description": "X",
                                  "unit_price": "10"
                              }],
                              discount="100",
                              actor="u")


def test_partial_then_full_payment(db, make_invoice):
    inv = make_invoice("100.00")

    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="40",
                         method="cash",
                         actor="cashier-1")
    db.refresh(inv)
    assert inv.paid_amount == Decimal("40.00")
    assert inv.balance_amount == Decimal("60.00")
    assert inv.status == "partially_paid"

    pay = ledger.apply_payment(db,
                               invoice_id=inv.id,
                               amount="60",
                               method="card",
                               reference="AUTH-1",
                               actor="cashier-1")
    db.refresh(inv)
    assert inv.status == "paid"
    assert inv.balance_amount == Decimal("0.00")
    assert pay.payment_number.startswith("PAY-")
    assert inv.ledger_balanced()

    total_paid = sum(p.amount for p in db.query(Payment).filter_by(
        invoice_id=inv.id))
    assert total_paid == Decimal("100.00")


def test_overpayment_is_capped_and_tracked(db, make_invoice):
    inv = make_invoice("100.00")
    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="130",
                         method="mobile_money",
                         actor="u")
    db.refresh(inv)
    assert inv.paid_amount == Decimal("100.00")
    assert inv.balance_amount == Decimal("0.00")
    assert inv.overpaid_amount == Decimal("30.00")
    assert inv.status == "paid"


def test_payment_on_paid_invoice_is_rejected(db, make_invoice):
    inv = make_invoice("50.00")
    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="50",
                         method="cash",
                         actor="u")
    with pytest.raises(ConflictError):
        ledger.apply_payment(db,
                             invoice_id=inv.id,
                             amount="1",
                             method="cash",
                             actor="u")
    assert db.query(Payment).count() == 1


@pytest.mark.parametrize("amount,method", [("0", "cash"), ("-5", "cash"),
                                           ("10", "bitcoin")])
def test_payment_input_validation(db, make_invoice, amount, method):
    inv = make_invoice()
    with pytest.raises(ValidationError):
        ledger.apply_payment(db,
                             invoice_id=inv.id,
                             amount=amount,
                             method=method,
                             actor="u")


def test_payment_unknown_invoice(db):
    with pytest.raises(NotFoundError):
        ledger.apply_payment(db,
                             invoice_id=999,
                             amount="10",
                             method="cash",
                             actor="u")


def test_cancel_unpaid_invoice(db, make_invoice):
    inv = make_invoice(notes="walk-in")
    ledger.cancel_invoice(db,
                          invoice_id=inv.id,
                          reason="Duplicate entry",
                          actor="supervisor")
    db.refresh(inv)
    assert inv.status == "cancelled"
    assert inv.cancelled_by == "supervisor"
    assert inv.notes.endswith("Cancelled: Duplicate entry")

    with pytest.raises(ConflictError):
        ledger.cancel_invoice(db,
                              invoice_id=inv.id,
                              reason="again",
                              actor="supervisor")
    with pytest.raises(ConflictError):
        ledger.apply_payment(db,
                             invoice_id=inv.id,
                             amount="10",
                             method="cash",
                             actor="u")


def test_cancel_with_payments_is_rejected(db, make_invoice):
    inv = make_invoice()
    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="10",
                         method="cash",
                         actor="u")
    with pytest.raises(ConflictError):
        ledger.cancel_invoice(db, invoice_id=inv.id, reason="x", actor="u")
    db.refresh(inv)
    assert inv.status == "partially_paid"


def test_audit_trail_written(db, make_invoice):
    inv = make_invoice()
    ledger.apply_payment(db,
                         invoice_id=inv.id,
                         amount="25",
                         method="cash",
                         actor="cashier-9")

    actions = [a.action for a in db.query(AuditLog).order_by(AuditLog.id)]
    assert actions == ["CREATE", "PAYMENT"]

    pay_audit = db.query(AuditLog).filter_by(action="PAYMENT").one()
    assert pay_audit.user_id == "cashier-9"
    assert pay_audit.old_values["balance_amount"] == "100.00"
    assert pay_audit.new_values["balance_amount"] == "75.00"


def test_read_side(db, make_invoice):
    a = make_invoice(patient_id="P-A")
    make_invoice(patient_id="P-B")
    make_invoice(patient_id="P-A")
    ledger.apply_payment(db,
                         invoice_id=a.id,
                         amount="10",
                         method="cash",
                         actor="u")

    rows, meta = ledger.list_invoices(db, patient_id="P-A", page=1, limit=1)
    assert len(rows) == 1
    assert meta == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}

    found = ledger.get_invoice_by_number(db, f"  {a.invoice_number.lower()} ")
    assert found.id == a.id
    assert len(found.payments) == 1

    with pytest.raises(NotFoundError):
        ledger.get_invoice(db, 12345)
    assert len(ledger.list_invoice_payments(db, a.id)) == 1


def test_financial_summary(db, make_invoice):
    a = make_invoice("100.00")
    b = make_invoice("50.00")
    c = make_invoice("70.00")
    ledger.apply_payment(db,
                         invoice_id=a.id,
                         amount="100",
                         method="cash",
                         actor="u")
    ledger.apply_payment(db,
                         invoice_id=b.id,
                         amount="20",
                         method="mobile_money",
                         actor="u")
    ledger.cancel_invoice(db, invoice_id=c.id, reason="error", actor="u")

    now = datetime.utcnow()
    out = ledger.financial_summary(db,
                                   start=now - timedelta(days=1),
                                   end=now + timedelta(days=1))
    assert out["total_invoiced"] == Decimal("150.00")
    assert out["total_collected"] == Decimal("120.00")
    assert out["total_outstanding"] == Decimal("30.00")
    assert out["payments_by_method"] == {
        "cash": Decimal("100.00"),
        "mobile_money": Decimal("20.00"),
    }
    assert out["invoice_count"] == 2
    assert out["payment_count"] == 2
