from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from scrapkart import logger
from scrapkart.common.utils import build_error, json_error
from scrapkart.common.constants import request_id_ctx


class ReconciliationError(Exception):
    """Base class for failures the engine reports to its callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "SERVER_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ReconciliationError):
    """Malformed or inconsistent input. Rejected, never retried."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class AuthenticationError(ReconciliationError):
    """Bad signature or missing identity. Security relevant."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_FAILED"


class PermissionDenied(AuthenticationError):
    """Authenticated caller acting on something it does not own."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFound(ReconciliationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class Unavailable(ReconciliationError):
    """Transient storage or gateway fault. The caller should retry later."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"


async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    rid = request_id_ctx.get(None)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request.rejected",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
            "reason": exc.message,
        },
    )
    payload = build_error(code=exc.code, details={"message": exc.message, **exc.details}, request_id=rid)
    headers = {"Retry-After": "5"} if isinstance(exc, Unavailable) else None
    return json_error(payload, status_code=exc.status_code, headers=headers)


async def fallback_handler(request: Request, exc: Exception):
    rid = request_id_ctx.get(None)
    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc,
    )
    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
        },
    )
    payload = build_error(code="UNPROCESSABLE_ENTITY", details={"message": "invalid request"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):
    rid = request_id_ctx.get(None)
    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message": exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception,  # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        ReconciliationError,
        reconciliation_error_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )
