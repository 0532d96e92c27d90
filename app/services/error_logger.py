from typing import Any, Dict, Optional
import logging
import traceback

from app.db import session as db_session
from app.models.error_log import ErrorLog

logger = logging.getLogger(__name__)


def log_error(
    *,
    description: Optional[str] = None,
    error_source: str = "backend",  # "backend" | "gateway" | "audit"
    endpoint: Optional[str] = None,
    module: Optional[str] = None,
    function: Optional[str] = None,
    http_status: Optional[int] = None,
    request_payload: Optional[Dict[str, Any]] = None,
    response_payload: Optional[Dict[str, Any]] = None,
    stack_trace: Optional[str] = None,
) -> None:
    """
    Persist an error for operator follow-up.
    Uses its own session so a rolled-back request transaction does not take
    the error row with it. Never raises.
    """
    db = db_session.SessionLocal()
    try:
        log = ErrorLog(
            error_source=error_source,
            description=(description or "")[:1000] or None,
            endpoint=endpoint,
            module=module,
            function=function,
            http_status=http_status,
            request_payload=request_payload,
            response_payload=response_payload,
            stack_trace=stack_trace,
        )
        db.add(log)
        db.commit()
    except Exception:
        # last resort, never raise from logger
        db.rollback()
        logger.exception("Failed to log error: %s", description)
    finally:
        db.close()


def format_exception(exc: Exception) -> str:
    return "".join(
        traceback.format_exception(type(exc), exc, exc.__traceback__))
