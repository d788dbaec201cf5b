from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - payload_too_large (413)
    - locked (423)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)

    ``headers`` are copied onto the error response (``Retry-After`` and the
    rate-limit metadata headers).
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


# -- authentication ---------------------------------------------------------


class InvalidCredentials(AuthenticationError):
    """Unknown identity or wrong secret; both read the same to the caller."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "locked"

    def __init__(self, locked_until: datetime, retry_after_minutes: int) -> None:
        unit = "minute" if retry_after_minutes == 1 else "minutes"
        super().__init__(
            "Account is locked due to too many failed login attempts. "
            f"Please try again in {retry_after_minutes} {unit}.",
            detail={
                "lockedUntil": locked_until.isoformat(),
                "retryAfterMinutes": retry_after_minutes,
            },
            headers={"Retry-After": str(retry_after_minutes * 60)},
        )
        self.locked_until = locked_until
        self.retry_after_minutes = retry_after_minutes


class WeakSecret(ValidationError):
    def __init__(self, errors: List[str], requirements: str) -> None:
        super().__init__(
            "Password does not meet security requirements",
            detail={"errors": list(errors), "requirements": requirements},
        )
        self.errors = list(errors)


class DuplicateEmail(ValidationError):
    def __init__(self) -> None:
        super().__init__("Email already registered", detail={"field": "email"})


class DuplicateIdentity(ValidationError):
    def __init__(self) -> None:
        super().__init__("Username already taken", detail={"field": "identity"})


class RegistrationClosed(ForbiddenError):
    def __init__(self) -> None:
        super().__init__(
            "Registration is disabled. Please contact an administrator to create new accounts."
        )


# -- tokens -------------------------------------------------------------------

ACTION_LOGIN = "login"
ACTION_REFRESH = "refresh_token"


class TokenError(AuthenticationError):
    """Base for credential failures; ``action`` tells the client what to do next."""

    default_message = "Invalid token"
    default_action = ACTION_LOGIN

    def __init__(self, message: Optional[str] = None, *, action: Optional[str] = None) -> None:
        self.action = action or self.default_action
        super().__init__(message or self.default_message, detail={"action": self.action})

    def with_action(self, action: str) -> "TokenError":
        """Return a copy of this error carrying a different client hint."""
        return type(self)(self.message, action=action)


class TokenMalformed(TokenError):
    default_message = "Invalid or missing token"
    default_action = ACTION_LOGIN


class TokenExpired(TokenError):
    default_message = "Token has expired"
    default_action = ACTION_REFRESH


class TokenRevoked(TokenError):
    default_message = "Token has been revoked"
    default_action = ACTION_REFRESH


class RefreshReplayed(TokenRevoked):
    """A refresh token that no longer maps to a session row.

    Reported exactly like ``TokenRevoked`` so a replay attempt learns nothing.
    """


# -- request gate -------------------------------------------------------------


class CsrfMismatch(ForbiddenError):
    def __init__(self) -> None:
        super().__init__(
            "Invalid or missing CSRF token. Please refresh the page and try again.",
            detail={"reason": "CSRF token validation failed"},
        )


class RateLimitExceeded(RateLimitedError):
    def __init__(self, limit: int, window_seconds: int, retry_after_seconds: int) -> None:
        super().__init__(
            f"Maximum {limit} requests per {window_seconds} seconds allowed",
            detail={
                "limit": limit,
                "window": window_seconds,
                "retryAfter": retry_after_seconds,
            },
            headers={
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Window": str(window_seconds),
                "Retry-After": str(retry_after_seconds),
            },
        )
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after_seconds = retry_after_seconds


class PayloadTooLarge(ServiceError):
    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, max_size_mb: int) -> None:
        super().__init__(
            f"Request body exceeds maximum size of {max_size_mb}MB",
            detail={"maxSizeMb": max_size_mb},
        )


__all__ = [
    "ACTION_LOGIN",
    "ACTION_REFRESH",
    "AccountLocked",
    "AuthenticationError",
    "CsrfMismatch",
    "DuplicateEmail",
    "DuplicateIdentity",
    "ForbiddenError",
    "InvalidCredentials",
    "NotFoundError",
    "PayloadTooLarge",
    "RateLimitExceeded",
    "RateLimitedError",
    "RefreshReplayed",
    "RegistrationClosed",
    "ServiceError",
    "TokenError",
    "TokenExpired",
    "TokenMalformed",
    "TokenRevoked",
    "ValidationError",
    "WeakSecret",
]
