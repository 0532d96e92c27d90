# FILE: app/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """
    Base for every business error raised by the billing / M-Pesa services.
    Mapped to the {"success": false, "error": {...}} envelope by
    app.api.exception_handlers.
    """
    status_code: int = 400
    code: str = "ledger_error"

    def __init__(self, msg: str, *, details: Any = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.details = details


class ValidationError(LedgerError):
    status_code = 400
    code = "validation_error"


class NotFoundError(LedgerError):
    status_code = 404
    code = "not_found"


class ConflictError(LedgerError):
    status_code = 409
    code = "conflict"


class GatewayError(LedgerError):
    """
    Upstream M-Pesa failure.

    retryable=True  -> transport problem / timeout (502). The prompt may
                       still have reached the payer, caller decides.
    retryable=False -> gateway answered and rejected the request (400).
    """
    code = "gateway_error"

    def __init__(
        self,
        msg: str,
        *,
        retryable: bool = False,
        gateway_code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(msg, details=details)
        self.retryable = retryable
        self.gateway_code = gateway_code
        self.status_code = 502 if retryable else 400


class InternalError(LedgerError):
    status_code = 500
    code = "internal_error"
