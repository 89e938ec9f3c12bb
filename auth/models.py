"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; the store and the service do the work.

Timestamps are timezone-aware UTC datetimes in the domain. The store converts
them to fixed-width ISO 8601 strings at the SQL boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ActivityType(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    LOGOUT_ALL = "LOGOUT_ALL"
    ACCOUNT_UPDATED = "ACCOUNT_UPDATED"


@dataclass
class Account:
    """One marketplace account.

    hashed_password, the two secret hashes and the refresh sessions never
    leave the service layer -- public_view() is the only shape handed to the
    HTTP layer.

    token_version is embedded in every issued token. Bumping it (password
    change, reset, deactivation) invalidates all outstanding tokens at once.
    """

    email: str
    hashed_password: str
    id: Optional[str] = None
    name: Optional[str] = None
    role: Role = Role.USER
    is_active: bool = True
    is_email_verified: bool = False
    token_version: int = 0
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verification_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "last_login": self.last_login,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class RefreshSession:
    """One live refresh token (one device). Only the SHA-256 of the token is kept."""

    token_hash: str
    issued_at: datetime
    expires_at: datetime
    device_label: str = "Unknown Device"
    account_id: Optional[str] = None
    id: Optional[int] = None


@dataclass
class Activity:
    type: ActivityType
    message: str
    account_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of an access or refresh token."""

    account_id: str
    token_version: int
    token_type: str
    expires_at: datetime
    jti: str = ""


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller threaded from the bearer dependency into route handlers."""

    account: Account
    claims: TokenClaims

    @property
    def is_admin(self) -> bool:
        return self.account.role == Role.ADMIN
