# FILE: app/services/mpesa_callbacks.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.gateway import (
    GatewayTransaction,
    GatewayTxnStatus,
    PushPaymentRequest,
)
from app.services.allocation import allocate
from app.services.audit_logger import SYSTEM_ACTOR, log_audit
from app.services.billing_math import D, money2
from app.services.invoice_ledger import find_invoice_by_number
from app.services.mpesa_push import resolve_push_request

logger = logging.getLogger(__name__)

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
# Daraja code for "Invalid Account Number"
REJECT_INVALID_ACCOUNT = {"ResultCode": "C2B00012", "ResultDesc": "Rejected"}
REJECTED = {"ResultCode": 1, "ResultDesc": "Rejected"}


def audit_callback(record_id: Any,
                   payload: Dict[str, Any],
                   ip: Optional[str] = None,
                   outcome: Optional[str] = None) -> None:
    log_audit(
        user_id=SYSTEM_ACTOR,
        action="MPESA_CALLBACK",
        table_name="mpesa_transactions",
        record_id=record_id,
        new_values={
            "outcome": outcome,
            "payload": payload
        },
        ip_address=ip,
    )


def _metadata(cb: Dict[str, Any]) -> Dict[str, Any]:
    items = ((cb.get("CallbackMetadata") or {}).get("Item")) or []
    out: Dict[str, Any] = {}
    for it in items:
        if isinstance(it, dict) and it.get("Name"):
            out[it["Name"]] = it.get("Value")
    return out


def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


def ingest_transaction(db: Session,
                       fields: Dict[str, Any]) -> Tuple[GatewayTransaction, bool]:
    """
    Store a received M-Pesa transaction once.

    Returns (transaction, created). A redelivery hits the unique
    transaction_id and comes back with created=False and the stored row.
    """
    txn = GatewayTransaction(status=GatewayTxnStatus.PENDING.value, **fields)
    db.add(txn)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = (db.query(GatewayTransaction).filter(
            GatewayTransaction.transaction_id == fields["transaction_id"]).first())
        if existing is None:
            raise
        logger.warning("Duplicate delivery of M-Pesa %s ignored",
                       fields["transaction_id"])
        return existing, False

    db.refresh(txn)
    logger.info("M-Pesa %s stored: %s from %s ref=%r", txn.transaction_id,
                txn.amount, txn.msisdn, txn.bill_ref_number)
    return txn, True


def parse_deposit(payload: Dict[str, Any]) -> Dict[str, Any]:
    """C2B confirmation body -> GatewayTransaction columns."""
    trans_id = _str_or_none(payload.get("TransID"))
    if not trans_id:
        raise ValidationError("TransID is required")

    amount = money2(payload.get("TransAmount"))
    if amount <= 0:
        raise ValidationError(f"Invalid TransAmount for {trans_id}")

    balance = payload.get("OrgAccountBalance")
    return {
        "transaction_id": trans_id,
        "transaction_type": _str_or_none(payload.get("TransactionType")),
        "transaction_time": _str_or_none(payload.get("TransTime")),
        "amount": amount,
        "business_short_code": _str_or_none(payload.get("BusinessShortCode")),
        "bill_ref_number": _str_or_none(payload.get("BillRefNumber")),
        "invoice_number": _str_or_none(payload.get("InvoiceNumber")),
        "org_account_balance": money2(balance) if _str_or_none(balance) else None,
        "third_party_trans_id": _str_or_none(payload.get("ThirdPartyTransID")),
        "msisdn": _str_or_none(payload.get("MSISDN")),
        "first_name": _str_or_none(payload.get("FirstName")),
        "middle_name": _str_or_none(payload.get("MiddleName")),
        "last_name": _str_or_none(payload.get("LastName")),
        "raw_payload": payload,
    }


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


def handle_push_callback(db: Session,
                         payload: Dict[str, Any],
                         *,
                         ip: Optional[str] = None) -> Dict[str, Any]:
    cb = (payload.get("Body") or {}).get("stkCallback")
    if not isinstance(cb, dict):
        logger.warning("STK callback without Body.stkCallback ignored")
        return ACCEPTED

    checkout_id = _str_or_none(cb.get("CheckoutRequestID"))
    result_code = cb.get("ResultCode")
    succeeded = str(result_code) == "0"
    meta = _metadata(cb) if succeeded else {}
    receipt = _str_or_none(meta.get("MpesaReceiptNumber"))

    resolution = {
        "succeeded": succeeded,
        "result_code": result_code,
        "result_desc": cb.get("ResultDesc"),
        "callback_data": cb,
        "receipt": receipt,
    }
    # Not committed yet: a success is committed together with its transaction
    resolved = resolve_push_request(db, checkout_id or "", **resolution)
    if not resolved:
        db.rollback()
        logger.warning(
            "STK callback for %s ignored (unknown or already resolved)",
            checkout_id)
        audit_callback(checkout_id, cb, ip, "ignored")
        return ACCEPTED

    if not succeeded:
        db.commit()
        logger.info("STK %s failed: %s %s", checkout_id, result_code,
                    cb.get("ResultDesc"))
        audit_callback(checkout_id, cb, ip, "failed")
        return ACCEPTED

    if not receipt:
        db.commit()
        logger.error("STK %s succeeded without MpesaReceiptNumber",
                     checkout_id)
        audit_callback(checkout_id, cb, ip, "missing_receipt")
        return ACCEPTED

    req = (db.query(PushPaymentRequest).filter(
        PushPaymentRequest.checkout_request_id == checkout_id).first())

    amount = meta.get("Amount")
    txn, created = ingest_transaction(
        db, {
            "transaction_id": receipt,
            "transaction_type": "CustomerPayBillOnline",
            "transaction_time": _str_or_none(meta.get("TransactionDate")),
            "amount": money2(amount if amount is not None else req.amount),
            "business_short_code": settings.MPESA_SHORTCODE or None,
            "bill_ref_number": req.account_reference,
            "msisdn": _str_or_none(meta.get("PhoneNumber")) or req.phone_number,
            "raw_payload": cb,
        })
    if not created:
        # receipt already stored; its rollback took the resolution with it
        resolve_push_request(db, checkout_id, **resolution)
        db.commit()

    allocated = allocate(db, txn) if created else False
    audit_callback(txn.id, cb, ip, "allocated" if allocated else "stored")
    return ACCEPTED


def handle_deposit_validation(db: Session,
                              payload: Dict[str, Any],
                              *,
                              ip: Optional[str] = None) -> Dict[str, Any]:
    """
    Accept everything unless bill-reference validation is switched on; then
    only references naming a payable invoice go through.
    """
    logger.info("C2B validation: %s %s ref=%r", payload.get("TransID"),
                payload.get("TransAmount"), payload.get("BillRefNumber"))

    if not settings.MPESA_VALIDATE_BILL_REF:
        return ACCEPTED

    if D(payload.get("TransAmount")) <= 0:
        return REJECTED

    inv = find_invoice_by_number(db, payload.get("BillRefNumber") or "")
    if inv is None or not inv.is_payable:
        logger.warning("C2B validation rejected unknown reference %r",
                       payload.get("BillRefNumber"))
        audit_callback(payload.get("TransID"), payload, ip, "rejected")
        return REJECT_INVALID_ACCOUNT
    return ACCEPTED


def handle_deposit_confirmation(db: Session,
                                payload: Dict[str, Any],
                                *,
                                ip: Optional[str] = None) -> Dict[str, Any]:
    logger.info("C2B confirmation received: %s", payload)

    fields = parse_deposit(payload)
    txn, created = ingest_transaction(db, fields)
    if not created:
        audit_callback(txn.id, payload, ip, "duplicate")
        return ACCEPTED

    allocated = allocate(db, txn)
    audit_callback(txn.id, payload, ip, "allocated" if allocated else "stored")
    return ACCEPTED
