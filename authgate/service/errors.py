from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - session_expired (401)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
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
    """Request validation failed (400).

    Field-level messages travel in ``detail["fields"]``.
    """
    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, fields: Optional[dict] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if fields:
            detail = {**detail, "fields": dict(fields)}
        super().__init__(message, detail=detail, **kwargs)
        self.fields = dict(fields or {})


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session is past its refresh horizon or no longer exists (401)."""
    error_code = "session_expired"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail = {**detail, "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Unexpected internal failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
