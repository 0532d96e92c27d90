# FILE: app/services/mpesa_push.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from app.models.gateway import PushPaymentRequest, PushRequestStatus
from app.services.billing_math import D, money2
from app.services.error_logger import format_exception, log_error
from app.services.invoice_ledger import find_invoice_by_number
from app.services.mpesa_client import STK_QUERY_IN_PROGRESS, MpesaClient
from app.utils.phone import is_valid_msisdn, normalize_msisdn

logger = logging.getLogger(__name__)


def _whole_shillings(amount) -> int:
    return int(D(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def initiate_push(
    db: Session,
    client: MpesaClient,
    *,
    phone: str,
    amount,
    account_reference: Optional[str] = None,
    invoice_number: Optional[str] = None,
    description: Optional[str] = None,
    actor: str,
) -> PushPaymentRequest:
    """
    Prompt the payer's phone for payment.

    The request row is only stored once the gateway has accepted the push;
    money is booked later by the callback, never here.
    """
    if not is_valid_msisdn(phone):
        raise ValidationError("Invalid Kenyan phone number")

    if D(amount) < 1:
        raise ValidationError("Amount must be at least 1")
    whole = _whole_shillings(amount)

    if invoice_number:
        inv = find_invoice_by_number(db, invoice_number)
        if not inv:
            raise NotFoundError("Invoice not found")
        if not inv.is_payable:
            raise ConflictError(
                f"Invoice {inv.invoice_number} is {inv.status}; nothing to collect")
        account_reference = account_reference or inv.invoice_number
        description = description or f"Payment for Invoice {inv.invoice_number}"

    account_reference = (account_reference or "").strip()
    if not account_reference:
        raise ValidationError("account_reference or invoice_number is required")

    msisdn = normalize_msisdn(phone)
    try:
        data = client.stk_push(
            phone=msisdn,
            amount=whole,
            account_reference=account_reference,
            description=description,
        )
    except GatewayError as e:
        log_error(
            description=f"STK push failed for {account_reference}: {e.msg}",
            error_source="gateway",
            module=__name__,
            function="initiate_push",
            http_status=e.status_code,
            request_payload={
                "phone": msisdn,
                "amount": whole,
                "account_reference": account_reference,
            },
            response_payload=e.details if isinstance(e.details, dict) else None,
            stack_trace=format_exception(e),
        )
        raise

    req = PushPaymentRequest(
        checkout_request_id=data["CheckoutRequestID"],
        merchant_request_id=data.get("MerchantRequestID"),
        phone_number=msisdn,
        amount=money2(whole),
        account_reference=account_reference,
        description=description,
        status=PushRequestStatus.PENDING.value,
        requested_by=actor,
    )
    db.add(req)
    db.commit()
    db.refresh(req)

    logger.info("STK push %s sent to %s for %s (%s)", req.checkout_request_id,
                msisdn, whole, account_reference)
    return req


def resolve_push_request(
    db: Session,
    checkout_request_id: str,
    *,
    succeeded: bool,
    result_code: Any,
    result_desc: Optional[str],
    callback_data: Optional[Dict[str, Any]] = None,
    receipt: Optional[str] = None,
) -> bool:
    """
    pending -> completed | failed, exactly once.

    Conditional UPDATE on status, so a repeated callback (or a callback racing
    a status query) changes nothing. Caller commits.
    """
    values: Dict[Any, Any] = {
        PushPaymentRequest.status:
        (PushRequestStatus.COMPLETED.value
         if succeeded else PushRequestStatus.FAILED.value),
        PushPaymentRequest.result_code: str(result_code),
        PushPaymentRequest.result_desc: (result_desc or "")[:255] or None,
        PushPaymentRequest.updated_at: datetime.utcnow(),
    }
    if callback_data is not None:
        values[PushPaymentRequest.callback_data] = callback_data
    if receipt:
        values[PushPaymentRequest.mpesa_receipt_number] = receipt

    n = (db.query(PushPaymentRequest).filter(
        PushPaymentRequest.checkout_request_id == checkout_request_id).filter(
            PushPaymentRequest.status == PushRequestStatus.PENDING.value).update(
                values, synchronize_session=False))
    return n == 1


def get_push_request(db: Session,
                     checkout_request_id: str) -> PushPaymentRequest:
    req = (db.query(PushPaymentRequest).filter(
        PushPaymentRequest.checkout_request_id == checkout_request_id).first())
    if not req:
        raise NotFoundError("Payment request not found")
    return req


def query_push_status(
    db: Session,
    client: MpesaClient,
    checkout_request_id: str,
) -> Dict[str, Any]:
    """
    Ask the gateway about a push whose callback has not arrived.

    A final failure resolves a still-pending request. A success leaves it
    pending: the query carries no receipt number, so the callback is still
    the one that books the money and completes the request.
    """
    req = get_push_request(db, checkout_request_id)

    try:
        data = client.stk_query(checkout_request_id)
    except GatewayError as e:
        if e.gateway_code == STK_QUERY_IN_PROGRESS:
            return {"request": req, "gateway": e.details, "in_progress": True}
        raise

    code = data.get("ResultCode")
    if code is None or req.status != PushRequestStatus.PENDING.value:
        return {"request": req, "gateway": data, "in_progress": False}

    if str(code) == "0":
        logger.info("STK %s paid per status query; awaiting callback",
                    checkout_request_id)
    else:
        if resolve_push_request(
                db,
                checkout_request_id,
                succeeded=False,
                result_code=code,
                result_desc=data.get("ResultDesc"),
        ):
            db.commit()
            logger.info("STK %s resolved by status query: %s (%s)",
                        checkout_request_id, code, data.get("ResultDesc"))
        else:
            db.rollback()
        db.refresh(req)

    return {"request": req, "gateway": data, "in_progress": False}


def list_stale_push_requests(
    db: Session,
    *,
    older_than_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[PushPaymentRequest]:
    minutes = (settings.MPESA_PUSH_STALE_MINUTES
               if older_than_minutes is None else int(older_than_minutes))
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=minutes)
    return (db.query(PushPaymentRequest).filter(
        PushPaymentRequest.status == PushRequestStatus.PENDING.value).filter(
            PushPaymentRequest.created_at <= cutoff).order_by(
                PushPaymentRequest.created_at.asc()).all())
