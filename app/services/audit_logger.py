from typing import Any, Dict, Optional
import logging

from fastapi.encoders import jsonable_encoder

from app.db import session as db_session
from app.models.audit import AuditLog
from app.models.billing import Invoice
from app.services.error_logger import log_error, format_exception

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


def log_audit(
    *,
    user_id: Optional[str],
    action: str,  # "CREATE" | "UPDATE" | "PAYMENT" | "ALLOCATE" | "MPESA_CALLBACK"
    table_name: str,
    record_id: Any,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    """
    Fire-and-forget audit event.

    Written through its own session after the business transaction has
    committed. A failure here is reported on the error channel and never
    reaches the caller.
    """
    db = db_session.SessionLocal()
    try:
        log = AuditLog(
            user_id=user_id,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=jsonable_encoder(old_values) if old_values else None,
            new_values=jsonable_encoder(new_values) if new_values else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.add(log)
        db.commit()
    except Exception as e:  # never reaches the caller
        db.rollback()
        logger.exception("Failed to log audit %s %s/%s", action, table_name,
                         record_id)
        log_error(
            description=f"Audit write failed: {action} {table_name}/{record_id}",
            error_source="audit",
            module=__name__,
            function="log_audit",
            request_payload={
                "old": repr(old_values)[:2000],
                "new": repr(new_values)[:2000]
            },
            stack_trace=format_exception(e),
        )
    finally:
        db.close()


def snapshot_invoice(inv: Invoice) -> Dict[str, Any]:
    return {
        "invoice_number": inv.invoice_number,
        "status": inv.status,
        "total_amount": str(inv.total_amount),
        "paid_amount": str(inv.paid_amount),
        "balance_amount": str(inv.balance_amount),
        "overpaid_amount": str(inv.overpaid_amount or 0),
    }
