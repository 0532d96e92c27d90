# FILE: app/services/allocation.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError
from app.models.billing import Invoice, Payment, PaymentMethod
from app.models.gateway import GatewayTransaction, GatewayTxnStatus
from app.services.audit_logger import SYSTEM_ACTOR, log_audit
from app.services.billing_math import money2
from app.services.invoice_ledger import (
    OnApplied,
    apply_payment,
    find_invoice_by_number,
    paginate_meta,
)

logger = logging.getLogger(__name__)


def _mark_allocated(db: Session, txn_id: int, actor: str) -> OnApplied:
    """Flip the transaction to allocated inside the payment's DB transaction."""

    def _mark(inv: Invoice, pay: Payment) -> None:
        n = (db.query(GatewayTransaction).filter(
            GatewayTransaction.id == txn_id).filter(
                GatewayTransaction.status ==
                GatewayTxnStatus.PENDING.value).update(
                    {
                        GatewayTransaction.status:
                        GatewayTxnStatus.ALLOCATED.value,
                        GatewayTransaction.allocated_invoice_id: inv.id,
                        GatewayTransaction.allocated_at: datetime.utcnow(),
                        GatewayTransaction.allocated_by: actor,
                    },
                    synchronize_session=False,
                ))
        if n != 1:
            raise ConflictError("M-Pesa transaction is already allocated")

    return _mark


def _apply_and_mark(db: Session, txn: GatewayTransaction, inv: Invoice,
                    actor: str) -> Payment:
    txn_id = txn.id
    receipt = txn.transaction_id
    pay = apply_payment(
        db,
        invoice_id=inv.id,
        amount=txn.amount,
        method=PaymentMethod.MOBILE_MONEY.value,
        actor=actor,
        reference=receipt,
        notes=f"M-Pesa {receipt}",
        gateway_transaction_id=txn_id,
        on_applied=_mark_allocated(db, txn_id, actor),
    )
    log_audit(
        user_id=actor,
        action="ALLOCATE",
        table_name="mpesa_transactions",
        record_id=txn_id,
        old_values={"status": GatewayTxnStatus.PENDING.value},
        new_values={
            "status": GatewayTxnStatus.ALLOCATED.value,
            "invoice_id": inv.id,
            "payment_id": pay.id,
            "transaction_id": receipt,
        },
    )
    return pay


def allocate(db: Session,
             txn: GatewayTransaction,
             *,
             actor: str = SYSTEM_ACTOR) -> bool:
    """
    Auto-match a received M-Pesa transaction to an invoice by its bill
    reference. Anything that does not match cleanly stays pending for the
    cashier; returns True only when a payment was booked.
    """
    ref = (txn.bill_ref_number or "").strip()
    inv = find_invoice_by_number(db, ref)
    if not inv:
        logger.warning("No invoice for bill reference %r (txn %s), left pending",
                       ref, txn.transaction_id)
        return False

    if not inv.is_payable:
        logger.info("Invoice %s is %s; txn %s left pending",
                    inv.invoice_number, inv.status, txn.transaction_id)
        return False

    try:
        _apply_and_mark(db, txn, inv, actor)
    except ConflictError as e:
        logger.warning("Auto-allocation of %s to %s skipped: %s",
                       txn.transaction_id, inv.invoice_number, e.msg)
        return False

    logger.info("M-Pesa %s allocated to %s", txn.transaction_id,
                inv.invoice_number)
    return True


def manual_allocate(
    db: Session,
    *,
    transaction_id: int,
    invoice_id: int,
    actor: str,
) -> Payment:
    # row lock; _mark_allocated still re-checks the status when it flips it
    txn = (db.query(GatewayTransaction).filter(
        GatewayTransaction.id == int(transaction_id)).with_for_update().
           populate_existing().first())
    if not txn:
        db.rollback()
        raise NotFoundError("Transaction not found")
    if txn.status != GatewayTxnStatus.PENDING.value:
        db.rollback()
        raise ConflictError(f"Transaction is already {txn.status}")

    inv = db.get(Invoice, int(invoice_id))
    if not inv:
        db.rollback()
        raise NotFoundError("Invoice not found")

    pay = _apply_and_mark(db, txn, inv, actor)
    logger.info("M-Pesa %s manually allocated to %s by %s",
                txn.transaction_id, inv.invoice_number, actor)
    return pay


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def list_unallocated(
    db: Session,
    *,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[GatewayTransaction], Dict[str, int]]:
    return list_transactions(db,
                             status=GatewayTxnStatus.PENDING.value,
                             page=page,
                             limit=limit)


def list_transactions(
    db: Session,
    *,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[GatewayTransaction], Dict[str, int]]:
    q = db.query(GatewayTransaction)
    if status:
        q = q.filter(GatewayTransaction.status == status)
    if start:
        q = q.filter(GatewayTransaction.created_at >= start)
    if end:
        q = q.filter(GatewayTransaction.created_at <= end)

    total = q.count()
    rows = (q.order_by(GatewayTransaction.created_at.desc(),
                       GatewayTransaction.id.desc()).offset(
                           (page - 1) * limit).limit(limit).all())
    return rows, paginate_meta(page, limit, total)


def transaction_statistics(
    db: Session,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Counts and sums per status; defaults to the last 30 days."""
    end = end or datetime.utcnow()
    start = start or (end - timedelta(days=30))

    rows = (db.query(
        GatewayTransaction.status,
        func.count(GatewayTransaction.id),
        func.coalesce(func.sum(GatewayTransaction.amount), 0),
    ).filter(GatewayTransaction.created_at >= start).filter(
        GatewayTransaction.created_at <= end).group_by(
            GatewayTransaction.status).all())

    counts = {s.value: 0 for s in GatewayTxnStatus}
    sums = {s.value: Decimal("0") for s in GatewayTxnStatus}
    for status, cnt, amt in rows:
        counts[status] = int(cnt or 0)
        sums[status] = money2(amt)

    return {
        "start": start,
        "end": end,
        "total_transactions": sum(counts.values()),
        "total_amount": money2(sum(sums.values(), Decimal("0"))),
        "allocated_count": counts[GatewayTxnStatus.ALLOCATED.value],
        "allocated_amount": money2(sums[GatewayTxnStatus.ALLOCATED.value]),
        "pending_count": counts[GatewayTxnStatus.PENDING.value],
        "pending_amount": money2(sums[GatewayTxnStatus.PENDING.value]),
    }
