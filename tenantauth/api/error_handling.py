from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.logging import get_correlation_id, get_logger
from tenantauth.service.errors import AuthenticationError, RateLimitedError, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Fallback codes for errors that do not carry their own error_code
STATUS_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def error_envelope(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = Envelope(
        status="error",
        error=ErrorBody(
            code=code or STATUS_CODES.get(status_code, "server_error"),
            message=message,
            details=details,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        body.request_id = request_id
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _challenge_headers(exc: ServiceError) -> Optional[Dict[str, str]]:
    if isinstance(exc, RateLimitedError):
        return {"Retry-After": str(exc.retry_after)}
    if isinstance(exc, AuthenticationError):
        return {"WWW-Authenticate": f'Bearer error="{exc.error_code}"'}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every error as the JSON error envelope."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "service_error",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return error_envelope(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            details=exc.detail or None,
            headers=_challenge_headers(exc),
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        # Normally translated to ConflictError by the services
        logger.warning("constraint_violation", path=request.url.path, field=exc.field)
        return error_envelope(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
        ]
        return error_envelope(400, "invalid request", details=problems)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error("http_error", path=request.url.path, status_code=exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_envelope(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_envelope(500, "internal server error", code="server_error")
