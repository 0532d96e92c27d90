# FILE: app/services/invoice_ledger.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from math import ceil
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from app.models.billing import (
    CLOSED_STATUSES,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    ItemType,
    NumberDocType,
    NumberResetPeriod,
    Payment,
    PaymentMethod,
)
from app.services.audit_logger import log_audit, snapshot_invoice
from app.services.billing_math import (
    D,
    compute_line_amounts,
    compute_tax,
    money2,
    split_payment,
)
from app.services.billing_numbers import make_payment_number, next_number

logger = logging.getLogger(__name__)

ITEM_TYPES = {t.value for t in ItemType}
PAYMENT_METHODS = {m.value for m in PaymentMethod}

# hook run inside the payment transaction, before commit
OnApplied = Callable[[Invoice, Payment], None]


def _field(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _status_value(x) -> str:
    return str(getattr(x, "value", x) or "")


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


def _build_items(items: Iterable[Any]) -> Tuple[List[InvoiceItem], Decimal]:
    rows: List[InvoiceItem] = []
    subtotal = Decimal("0")

    for seq, it in enumerate(items, start=1):
        qty = D(_field(it, "quantity", 1))
        price = D(_field(it, "unit_price", 0))
        disc = D(_field(it, "discount", 0))
        item_type = _status_value(_field(it, "item_type", ItemType.OTHER.value))
        desc = (_field(it, "description") or "").strip()

        if qty <= 0:
            raise ValidationError(f"Item {seq}: quantity must be > 0")
        if price < 0:
            raise ValidationError(f"Item {seq}: unit price cannot be negative")
        if disc < 0:
            raise ValidationError(f"Item {seq}: discount cannot be negative")
        if item_type not in ITEM_TYPES:
            raise ValidationError(f"Item {seq}: unknown item type '{item_type}'")
        if not desc:
            raise ValidationError(f"Item {seq}: description is required")

        amounts = compute_line_amounts(qty, price, disc)
        rows.append(
            InvoiceItem(
                seq=seq,
                item_type=item_type,
                item_ref=_field(it, "item_ref"),
                description=desc[:300],
                quantity=qty,
                unit_price=money2(price),
                discount_amount=amounts["discount_amount"],
                line_total=amounts["net_amount"],
            ))
        subtotal += amounts["net_amount"]

    return rows, money2(subtotal)


def create_invoice(
    db: Session,
    *,
    patient_id: str,
    items: Iterable[Any],
    discount=0,
    visit_id: Optional[str] = None,
    notes: Optional[str] = None,
    actor: str,
    tax_rate=None,
) -> Invoice:
    """
    Snapshot the items, compute totals once and open the invoice as pending.

      subtotal = sum(qty * unit_price - line discount)
      tax      = subtotal * BILLING_TAX_RATE / 100
      total    = subtotal + tax - discount
    """
    items = list(items or [])
    if not items:
        raise ValidationError("At least one invoice item is required")
    if not (patient_id or "").strip():
        raise ValidationError("patient_id is required")

    header_disc = money2(discount)
    if header_disc < 0:
        raise ValidationError("Discount cannot be negative")

    rate = settings.BILLING_TAX_RATE if tax_rate is None else D(tax_rate)

    # number clash (two creators on a backend without row locks) -> take the next one
    for attempt in range(1, 4):
        item_rows, subtotal = _build_items(items)
        tax = compute_tax(subtotal, rate)
        total = money2(subtotal + tax - header_disc)
        if total < 0:
            raise ValidationError("Discount exceeds invoice amount")

        try:
            number = next_number(
                db,
                doc_type=NumberDocType.INVOICE,
                prefix=settings.INVOICE_NUMBER_PREFIX,
                reset_period=NumberResetPeriod.MONTH,
                padding=4,
            )
            inv = Invoice(
                invoice_number=number,
                patient_id=patient_id.strip(),
                visit_id=visit_id,
                status=InvoiceStatus.PENDING.value,
                subtotal=subtotal,
                tax_total=tax,
                discount=header_disc,
                total_amount=total,
                paid_amount=Decimal("0.00"),
                balance_amount=total,
                overpaid_amount=Decimal("0.00"),
                notes=notes,
                created_by=actor,
                items=item_rows,
            )
            db.add(inv)
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            logger.warning("Invoice number clash, retrying (attempt %s)",
                           attempt)
    else:
        raise ConflictError("Could not allocate an invoice number, retry")

    db.refresh(inv)
    logger.info("Invoice %s created for patient %s total=%s",
                inv.invoice_number, inv.patient_id, inv.total_amount)

    log_audit(
        user_id=actor,
        action="CREATE",
        table_name="billing_invoices",
        record_id=inv.id,
        new_values={
            **snapshot_invoice(inv),
            "patient_id": inv.patient_id,
            "item_count": len(item_rows),
        },
    )
    return inv


# ---------------------------------------------------------------------------
# Apply payment
# ---------------------------------------------------------------------------


def _lock_invoice(db: Session, invoice_id: int) -> Optional[Invoice]:
    return (db.query(Invoice).filter(Invoice.id == int(invoice_id)).
            with_for_update().populate_existing().first())


def _apply_once(
    db: Session,
    *,
    invoice_id: int,
    amount: Decimal,
    method: str,
    actor: str,
    reference: Optional[str],
    notes: Optional[str],
    gateway_transaction_id: Optional[int],
) -> Tuple[Invoice, Payment, Dict[str, Any]]:
    inv = _lock_invoice(db, invoice_id)
    if not inv:
        raise NotFoundError("Invoice not found")

    st = _status_value(inv.status)
    if st in CLOSED_STATUSES:
        raise ConflictError(
            f"Invoice {inv.invoice_number} is {st}; no further payments accepted")

    before = snapshot_invoice(inv)
    split = split_payment(inv.total_amount, inv.paid_amount, amount)

    pay = Payment(
        payment_number=make_payment_number(),
        invoice_id=inv.id,
        amount=amount,
        method=method,
        reference_no=reference,
        notes=notes,
        gateway_transaction_id=gateway_transaction_id,
        received_by=actor,
    )
    db.add(pay)

    inv.paid_amount = split["paid"]
    inv.balance_amount = split["balance"]
    inv.overpaid_amount = money2(D(inv.overpaid_amount) + split["overpaid"])
    inv.status = (InvoiceStatus.PAID.value if split["balance"] == 0 else
                  InvoiceStatus.PARTIALLY_PAID.value)

    # invoice UPDATE carries the version check; a stale copy fails here
    db.flush()
    return inv, pay, before


def apply_payment(
    db: Session,
    *,
    invoice_id: int,
    amount,
    method: str,
    actor: str,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    gateway_transaction_id: Optional[int] = None,
    on_applied: Optional[OnApplied] = None,
    max_retries: Optional[int] = None,
) -> Payment:
    """
    The only path that moves money onto an invoice (cash desk, manual
    allocation and M-Pesa auto-allocation all come through here).

    Invoice row is locked for the read-modify-write. Where the backend has
    no row locks the version column detects the lost update and the whole
    step is recomputed from a fresh read.
    """
    amt = money2(amount)
    if amt <= 0:
        raise ValidationError("Payment amount must be > 0")
    method = _status_value(method)
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method '{method}'")

    retries = max_retries or settings.PAYMENT_APPLY_MAX_RETRIES

    for attempt in range(1, retries + 1):
        try:
            inv, pay, before = _apply_once(
                db,
                invoice_id=invoice_id,
                amount=amt,
                method=method,
                actor=actor,
                reference=reference,
                notes=notes,
                gateway_transaction_id=gateway_transaction_id,
            )
            if on_applied is not None:
                on_applied(inv, pay)
            db.commit()
            break
        except StaleDataError:
            db.rollback()
            logger.warning(
                "Concurrent update on invoice %s, recomputing (attempt %s/%s)",
                invoice_id, attempt, retries)
        except IntegrityError as e:
            db.rollback()
            if gateway_transaction_id is not None:
                raise ConflictError(
                    "M-Pesa transaction is already booked to a payment") from e
            raise ConflictError("Payment could not be recorded, retry") from e
        except LedgerError:
            db.rollback()
            raise
    else:
        raise ConflictError(
            "Invoice is being updated by another payment, please retry")

    logger.info("Payment %s of %s (%s) applied to %s -> balance %s [%s]",
                pay.payment_number, pay.amount, method, inv.invoice_number,
                inv.balance_amount, inv.status)

    log_audit(
        user_id=actor,
        action="PAYMENT",
        table_name="billing_payments",
        record_id=pay.id,
        old_values=before,
        new_values={
            **snapshot_invoice(inv),
            "payment_number": pay.payment_number,
            "amount": str(pay.amount),
            "method": method,
            "gateway_transaction_id": gateway_transaction_id,
        },
    )
    return pay


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


def cancel_invoice(
    db: Session,
    *,
    invoice_id: int,
    reason: str,
    actor: str,
) -> Invoice:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")

    inv = _lock_invoice(db, invoice_id)
    if not inv:
        db.rollback()
        raise NotFoundError("Invoice not found")

    st = _status_value(inv.status)
    if st in {InvoiceStatus.CANCELLED.value, InvoiceStatus.REFUNDED.value}:
        db.rollback()
        raise ConflictError(f"Invoice {inv.invoice_number} is already {st}")
    if D(inv.paid_amount) > 0:
        db.rollback()
        raise ConflictError(
            "Cannot cancel invoice with payments. Process refund instead.")

    before = snapshot_invoice(inv)
    inv.status = InvoiceStatus.CANCELLED.value
    inv.cancelled_at = datetime.utcnow()
    inv.cancelled_by = actor
    inv.cancel_reason = reason[:255]
    inv.notes = f"{inv.notes or ''}\n\nCancelled: {reason}".strip()

    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError(
            "Invoice changed while cancelling; reload and retry") from e

    logger.info("Invoice %s cancelled by %s", inv.invoice_number, actor)
    log_audit(
        user_id=actor,
        action="UPDATE",
        table_name="billing_invoices",
        record_id=inv.id,
        old_values=before,
        new_values={
            **snapshot_invoice(inv), "reason": reason
        },
    )
    return inv


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    inv = (db.query(Invoice).options(
        selectinload(Invoice.items),
        selectinload(Invoice.payments)).filter(
            Invoice.id == int(invoice_id)).first())
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


def find_invoice_by_number(db: Session, invoice_number: str) -> Optional[Invoice]:
    ref = (invoice_number or "").strip().upper()
    if not ref:
        return None
    return (db.query(Invoice).filter(
        func.upper(Invoice.invoice_number) == ref).first())


def get_invoice_by_number(db: Session, invoice_number: str) -> Invoice:
    inv = find_invoice_by_number(db, invoice_number)
    if not inv:
        raise NotFoundError("Invoice not found")
    return get_invoice(db, inv.id)


def paginate_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": ceil(total / limit) if limit else 0,
    }


def list_invoices(
    db: Session,
    *,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Invoice], Dict[str, int]]:
    q = db.query(Invoice)
    if patient_id:
        q = q.filter(Invoice.patient_id == patient_id)
    if status:
        q = q.filter(Invoice.status == status)
    if start:
        q = q.filter(Invoice.created_at >= start)
    if end:
        q = q.filter(Invoice.created_at <= end)

    total = q.count()
    rows = (q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).offset(
        (page - 1) * limit).limit(limit).all())
    return rows, paginate_meta(page, limit, total)


def list_invoice_payments(db: Session, invoice_id: int) -> List[Payment]:
    if not db.query(Invoice.id).filter(Invoice.id == int(invoice_id)).first():
        raise NotFoundError("Invoice not found")
    return (db.query(Payment).filter(
        Payment.invoice_id == int(invoice_id)).order_by(
            Payment.created_at.desc(), Payment.id.desc()).all())


def financial_summary(db: Session, *, start: datetime,
                      end: datetime) -> Dict[str, Any]:
    """Invoiced vs collected for a date range (cancelled invoices excluded)."""
    inv_q = (db.query(Invoice).filter(Invoice.created_at >= start).filter(
        Invoice.created_at <= end).filter(
            Invoice.status != InvoiceStatus.CANCELLED.value))

    total_invoiced = Decimal("0")
    total_outstanding = Decimal("0")
    invoice_count = 0
    for inv in inv_q.all():
        invoice_count += 1
        total_invoiced += D(inv.total_amount)
        total_outstanding += D(inv.balance_amount)

    by_method: Dict[str, Decimal] = {}
    rows = (db.query(Payment.method, func.count(Payment.id),
                     func.coalesce(func.sum(Payment.amount), 0)).filter(
                         Payment.created_at >= start).filter(
                             Payment.created_at <= end).group_by(
                                 Payment.method).all())
    payment_count = 0
    for method, cnt, amt in rows:
        by_method[method] = money2(amt)
        payment_count += int(cnt or 0)

    return {
        "total_invoiced": money2(total_invoiced),
        "total_collected": money2(sum(by_method.values(), Decimal("0"))),
        "total_outstanding": money2(total_outstanding),
        "payments_by_method": by_method,
        "invoice_count": invoice_count,
        "payment_count": payment_count,
    }
