# FILE: app/api/routes_mpesa_callbacks.py
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import callback_source_allowed, get_db
from app.core.errors import ValidationError
from app.services import mpesa_callbacks as callbacks
from app.services.error_logger import format_exception, log_error

logger = logging.getLogger(__name__)

# Public: called by Safaricom, not by staff. No bearer token here.
router = APIRouter(prefix="/mpesa", tags=["M-Pesa Callbacks"])

Handler = Callable[..., Dict[str, Any]]


async def raw_body(request: Request) -> bytes:
    # parsed in _run so a bad body is still answered with the gateway envelope
    return await request.body()


def _parse(raw: bytes) -> Dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Callback body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")
    return payload


def _run(
    handler: Handler,
    db: Session,
    raw: bytes,
    request: Request,
    ip: Optional[str],
    *,
    on_error: Dict[str, Any],
) -> Dict[str, Any]:
    """
    The gateway retries anything that is not a prompt 200, so failures are
    recorded for follow-up and still answered.
    """
    payload: Dict[str, Any] = {}
    try:
        payload = _parse(raw)
        logger.info("M-Pesa callback %s: %s", request.url.path, payload)
        return handler(db, payload, ip=ip)
    except Exception as e:
        db.rollback()
        logger.exception("M-Pesa callback %s failed", request.url.path)
        recorded = payload or {"raw": raw.decode("utf-8", "replace")[:4000]}
        log_error(
            description=f"M-Pesa callback failed: {e}",
            error_source="gateway",
            endpoint=f"{request.method} {request.url.path}",
            module=handler.__module__,
            function=handler.__name__,
            http_status=200,
            request_payload=recorded,
            response_payload=on_error,
            stack_trace=format_exception(e),
        )
        callbacks.audit_callback(None, recorded, ip, "error")
        return on_error


@router.post("/push-callback")
def push_callback(
        request: Request,
        raw: bytes = Depends(raw_body),
        db: Session = Depends(get_db),
        ip: Optional[str] = Depends(callback_source_allowed),
):
    return _run(callbacks.handle_push_callback,
                db,
                raw,
                request,
                ip,
                on_error=callbacks.ACCEPTED)


@router.post("/deposit-validation")
def deposit_validation(
        request: Request,
        raw: bytes = Depends(raw_body),
        db: Session = Depends(get_db),
        ip: Optional[str] = Depends(callback_source_allowed),
):
    return _run(callbacks.handle_deposit_validation,
                db,
                raw,
                request,
                ip,
                on_error=callbacks.REJECTED)


@router.post("/deposit-confirmation")
def deposit_confirmation(
        request: Request,
        raw: bytes = Depends(raw_body),
        db: Session = Depends(get_db),
        ip: Optional[str] = Depends(callback_source_allowed),
):
    return _run(callbacks.handle_deposit_confirmation,
                db,
                raw,
                request,
                ip,
                on_error=callbacks.ACCEPTED)
