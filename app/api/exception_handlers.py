# FILE: app/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.response import err
from app.core.errors import InternalError, LedgerError
from app.services.error_logger import format_exception, log_error

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request,
                                       exc: LedgerError) -> JSONResponse:
        return err(msg=exc.msg,
                   status_code=exc.status_code,
                   code=exc.code,
                   details=exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
            request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg=msg, status_code=exc.status_code, code="http_error")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
            request: Request, exc: RequestValidationError) -> JSONResponse:
        return err(
            msg="Validation failed",
            status_code=400,
            code="validation_error",
            details=exc.errors(),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request,
                                          exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method,
                         request.url.path)
        log_error(
            description=str(exc) or exc.__class__.__name__,
            endpoint=f"{request.method} {request.url.path}",
            http_status=500,
            stack_trace=format_exception(exc),
        )
        internal = InternalError("Internal server error")
        return err(msg=internal.msg,
                   status_code=internal.status_code,
                   code=internal.code)
