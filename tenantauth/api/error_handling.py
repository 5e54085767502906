from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthError, AuthErrorKind, RateLimitedError, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

RETRY_AFTER_SECONDS = 1

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}

_INVALID_CREDENTIALS = (401, "unauthorized", "invalid credentials")
_INVALID_SESSION = (401, "unauthorized", "invalid or expired session")

# Every kind maps explicitly; callers only ever see the generic message.
AUTH_ERROR_RESPONSES: dict[AuthErrorKind, tuple[int, str, str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: _INVALID_CREDENTIALS,
    AuthErrorKind.ACCOUNT_NOT_ACTIVE: _INVALID_CREDENTIALS,
    AuthErrorKind.SESSION_NOT_FOUND: _INVALID_SESSION,
    AuthErrorKind.TOKEN_REVOKED: _INVALID_SESSION,
    AuthErrorKind.TOKEN_EXPIRED: _INVALID_SESSION,
    AuthErrorKind.ROTATION_CONFLICT: _INVALID_SESSION,
    AuthErrorKind.TENANT_NOT_AUTHORIZED: (403, "forbidden", "tenant access denied"),
    AuthErrorKind.TENANT_NOT_ACTIVE: (403, "forbidden", "tenant is not active"),
    AuthErrorKind.DEPENDENCY_UNAVAILABLE: (
        503,
        "service_unavailable",
        "service temporarily unavailable",
    ),
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if status_code < 500 else "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def auth_error_response(exc: AuthError) -> JSONResponse:
    status_code, code, message = AUTH_ERROR_RESPONSES[exc.kind]
    headers = None
    if exc.kind.retryable:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    elif status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return _error_response(status_code, message, code=code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for lifecycle, service and storage errors."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        log_fn = logger.error if exc.kind.retryable else logger.warning
        log_fn(
            "auth_error",
            path=request.url.path,
            method=request.method,
            kind=exc.kind.value,
            message=exc.message,
            detail=exc.detail,
        )
        return auth_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(400, exc.message, exc.detail, code="validation_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
