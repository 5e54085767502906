from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for request-level service exceptions mapped to HTTP responses.

    Each subclass defines both an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - server_error (500)

    Authentication lifecycle failures do not use this hierarchy; they raise
    :class:`AuthError` carrying an :class:`AuthErrorKind`.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthErrorKind(str, Enum):
    """Closed set of authentication lifecycle failures."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_NOT_ACTIVE = "account_not_active"
    TENANT_NOT_AUTHORIZED = "tenant_not_authorized"
    TENANT_NOT_ACTIVE = "tenant_not_active"
    SESSION_NOT_FOUND = "session_not_found"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    ROTATION_CONFLICT = "rotation_conflict"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"

    @property
    def retryable(self) -> bool:
        return self is AuthErrorKind.DEPENDENCY_UNAVAILABLE


class AuthError(Exception):
    """A lifecycle failure tagged with its kind.

    ``detail`` is for logs and the audit channel only and must never be
    rendered to the caller.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.detail = detail or {}

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, message={self.message!r})"


class ConfigurationError(RuntimeError):
    """Startup configuration is missing or invalid; the process must not serve."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("invalid configuration: " + "; ".join(self.problems))


__all__ = [
    "ServiceError",
    "ValidationError",
    "ServerError",
    "AuthErrorKind",
    "AuthError",
    "ConfigurationError",
]
