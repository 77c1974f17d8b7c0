from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable,
    machine-readable error_code. Callers may override either per raise, e.g.
    ``ValidationError("...", error_code="INVALID_MOBILE")``. ``reset_challenge``
    asks the HTTP layer to drop the caller's in-flight challenge cookie.
    """

    status_code: int = 400
    error_code: str = "MISSING_FIELDS"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reset_challenge: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.reset_challenge = reset_challenge
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "MISSING_FIELDS"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    """Generic identity/password failure that never names the failing check."""
    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid credentials.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class InvalidAuthStateError(ForbiddenError):
    """Challenge missing, expired, tampered with, or at the wrong stage."""
    error_code = "INVALID_AUTH_STATE"

    def __init__(
        self, message: str = "Invalid authentication state. Please start over.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    """Account is temporarily locked after repeated password failures."""
    error_code = "ACCOUNT_LOCKED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Email or identifier collision (409)."""
    status_code = 409
    error_code = "DUPLICATE_ERROR"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "InvalidAuthStateError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
