"""
API request and response models for the marketplace auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies accept both snake_case and camelCase field names (e.g.
new_password / newPassword). Response payloads use camelCase for account
fields and snake_case for tokens (access_token, refresh_token).

Field presence is checked here (missing field -> 400 via the validation
handler). Content rules (email format, password strength) are enforced by
AuthService so every entry point, not just HTTP, applies them.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Account, Role

_REQUEST_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
)

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response body for every success and error response."""

    success: bool
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


def envelope(message: str, data: Optional[dict[str, Any]] = None, success: bool = True) -> dict[str, Any]:
    """Return an Envelope as a JSON-ready dict."""
    return Envelope(success=success, message=message, data=data or {}).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /register."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    name: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class EmailRequest(BaseModel):
    """Request body for POST /resend-verification and POST /request-password-reset."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /reset-password-otp."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    otp: str = Field(max_length=32)
    new_password: str = Field(max_length=255)


class RefreshTokenRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    refresh_token: str = Field(max_length=4096)


class LogoutRequest(BaseModel):
    """Request body for POST /logout. An absent token is accepted (no-op)."""

    model_config = _REQUEST_CONFIG

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    current_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


class AccountPatch(BaseModel):
    """Request body for PATCH /users/{account_id} (admin only)."""

    model_config = _REQUEST_CONFIG

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountView(BaseModel):
    """Public projection of an account. Never carries hashes, secrets or sessions."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    email: str
    name: Optional[str]
    role: Role
    is_active: bool
    is_email_verified: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountView":
        """Build an AccountView from a domain Account (Factory Method)."""
        return cls(**account.public_view())

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
