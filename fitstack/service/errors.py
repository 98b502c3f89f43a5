from __future__ import annotations

from typing import Optional

INVALID_REFRESH_TOKEN = "invalid refresh token"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
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


class BadRequestError(ValidationError):
    """Malformed input, duplicate registration or failed identity verification."""
    pass


class AuthenticationError(ServiceError):
    """Bad, expired or revoked credentials (401).

    Messages are deliberately generic so callers cannot tell which check
    rejected them.
    """
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Access token is malformed, badly signed, uses another algorithm or has expired."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenNotFound(AuthenticationError):
    """No live refresh token matches the presented value."""

    def __init__(self, message: str = INVALID_REFRESH_TOKEN, **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpired(AuthenticationError):
    """The presented refresh token exists but is past its expiry date.

    Shares the not-found message; only logs tell the two apart.
    """

    def __init__(self, message: str = INVALID_REFRESH_TOKEN, **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Caller address is locked out for an endpoint class (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail["retry_after"] = retry_after
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration; the process must refuse to start."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidTokenError",
    "RefreshTokenNotFound",
    "RefreshTokenExpired",
    "NotFoundError",
    "RateLimitedError",
    "ConfigurationError",
]
