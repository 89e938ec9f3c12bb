"""
auth/errors.py -- Domain error taxonomy for the auth core.

Every error carries the HTTP status it maps to and a stable machine-readable
code. The auth core raises these; api/main.py converts them into the
{success, message, data} envelope. Nothing in auth/ builds HTTP responses.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Any, Optional


class AuthError(Exception):
    """Base class for errors raised by the auth core."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.data = data or {}


class ValidationError(AuthError):
    """Malformed or missing input, weak password (400)."""

    status_code = 400
    code = "validation_error"


class DuplicateEmailError(ValidationError):
    """Registration with an email that already has an account (400)."""

    def __init__(self, message: str = "Email already in use") -> None:
        super().__init__(message, code="email_in_use")


class AuthenticationError(AuthError):
    """Bad credentials or an unusable token (401)."""

    status_code = 401
    code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token signature, structure, type or version check failed."""

    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message, code="invalid_token")


class ExpiredTokenError(AuthenticationError):
    def __init__(self, message: str = "Token expired") -> None:
        super().__init__(message, code="token_expired")


class AuthorizationError(AuthError):
    """Authenticated but not allowed (403)."""

    status_code = 403
    code = "forbidden"


class EmailNotVerifiedError(AuthorizationError):
    def __init__(self) -> None:
        super().__init__(
            "Please verify your email before logging in. Check your inbox for the verification link.",
            code="email_not_verified",
        )


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"


class LockedError(AuthError):
    """Account temporarily locked after repeated failed logins (423)."""

    status_code = 423
    code = "account_locked"

    def __init__(self, message: str = "Account is temporarily locked due to too many failed login attempts") -> None:
        super().__init__(message)


class RateLimitError(AuthError):
    status_code = 429
    code = "rate_limited"


class InternalError(AuthError):
    """Persistence or transport failure (500). The message is safe to show."""

    status_code = 500
    code = "internal_error"


class MailDeliveryError(InternalError):
    def __init__(self, message: str = "Failed to send email") -> None:
        super().__init__(message, code="mail_delivery_failed")
