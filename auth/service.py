"""
auth/service.py -- AuthService: the session-lifecycle orchestration.

Sequences the credential store, lockout policy, verification/reset flow,
token issuer and session manager into the register / login / verify /
reset / refresh / logout / change-password flows. Route handlers in
api/routes/v1/auth.py are thin: parse the body, call one method here, wrap
the result in the response envelope.

Every collaborator is passed in at construction (store, issuer, mailer,
clock); from_settings() is the one place that reads configuration. Nothing
in here looks up globals or imports from api/.

Failure policy:
  - Domain errors from auth.errors propagate to the HTTP layer unchanged.
  - Login flattens "no such email" and "wrong password" into one 401
    message, and burns a bcrypt comparison for unknown emails.
  - Password-reset requests answer identically whether or not the email
    exists.
  - Mail failures during registration and verification are logged and
    swallowed; during reset and resend-verification they propagate (500),
    since the mail is the only way the user receives the secret.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from auth.errors import (
    AuthenticationError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidTokenError,
    LockedError,
    MailDeliveryError,
    NotFoundError,
    ValidationError,
)
from auth.lockout import LockoutPolicy
from auth.mailer import Mailer, redact_email
from auth.models import Account, Activity, ActivityType, AuthContext, Role
from auth.passwords import burn_password_check, hash_password, validate_password_strength, verify_password
from auth.sessions import SessionManager
from auth.store import AccountStore, normalize_email
from auth.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenIssuer, utcnow
from auth.verification import VerificationFlow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("marketplace.auth")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_NAME_LENGTH = 50

INVALID_CREDENTIALS = "Invalid credentials"
TOKEN_INVALIDATED = "Token has been invalidated. Please login again."
RESET_REQUESTED_MESSAGE = "If the email exists, a reset code has been sent."


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    account: Account


class AuthService:
    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        mailer: Mailer,
        *,
        lockout: Optional[LockoutPolicy] = None,
        verification: Optional[VerificationFlow] = None,
        sessions: Optional[SessionManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.mailer = mailer
        self.lockout = lockout or LockoutPolicy(store)
        self.verification = verification or VerificationFlow(store, clock=clock)
        self.sessions = sessions or SessionManager(store, refresh_ttl=issuer.refresh_ttl, clock=clock)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: AccountStore,
        mailer: Mailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        """Wire every component from one Settings instance."""
        issuer = TokenIssuer(
            settings.secret_key,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
            clock=clock,
        )
        return cls(
            store,
            issuer,
            mailer,
            lockout=LockoutPolicy(
                store,
                max_attempts=settings.max_login_attempts,
                lock_duration=timedelta(minutes=settings.lockout_minutes),
            ),
            verification=VerificationFlow(
                store,
                verification_ttl=timedelta(hours=settings.email_verification_expire_hours),
                reset_ttl=timedelta(minutes=settings.password_reset_expire_minutes),
                clock=clock,
            ),
            sessions=SessionManager(
                store,
                refresh_ttl=issuer.refresh_ttl,
                max_sessions=settings.max_sessions_per_account,
                clock=clock,
            ),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: Optional[str] = None) -> Account:
        """Create an unverified account and mail its verification link."""
        if not email or not password:
            raise ValidationError("Email and password are required")
        email = _validate_email(email)
        validate_password_strength(password)
        name = _validate_name(name)
        if self.store.get_by_email(email) is not None:
            raise DuplicateEmailError()

        account_id = self.store.create_account(Account(email=email, hashed_password=hash_password(password), name=name))
        account = self.store.get_by_id(account_id)
        token = self.verification.issue_email_verification(account)
        try:
            self.mailer.send_verification_email(account.email, token)
        except MailDeliveryError:
            logger.warning("Verification email to %s failed; registration kept", redact_email(account.email))

        self._record(ActivityType.USER_REGISTERED, f"New user registered: {account.email}", account.id)
        logger.info("Registered account %s", account.id)
        return self.store.get_by_id(account_id)

    def verify_email(self, email: str, token: str) -> Account:
        account_id = self.verification.confirm_email(email, token)
        account = self.store.get_by_id(account_id)
        try:
            self.mailer.send_welcome_email(account.email, account.name)
        except MailDeliveryError:
            logger.warning("Welcome email to %s failed", redact_email(account.email))
        self._record(ActivityType.EMAIL_VERIFIED, f"Email verified: {account.email}", account.id)
        return account

    def resend_verification(self, email: str) -> None:
        if not email:
            raise ValidationError("Email is required")
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFoundError("User not found")
        if account.is_email_verified:
            raise ValidationError("Email is already verified", code="already_verified")
        token = self.verification.issue_email_verification(account)
        self.mailer.send_verification_email(account.email, token)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, device_label: Optional[str] = None) -> LoginResult:
        """Check credentials and open a new refresh session.

        Order of checks: unknown email (401) -> locked (423) -> inactive
        (401) -> unverified (403) -> password (401, counts toward lockout).
        While locked the password is never evaluated.
        """
        if not email or not password:
            raise ValidationError("Email and password are required")
        account = self.store.get_by_email(email)
        if account is None:
            burn_password_check(password)
            raise AuthenticationError(INVALID_CREDENTIALS, code="invalid_credentials")

        now = self._clock()
        if self.lockout.is_locked(account, now):
            raise LockedError()
        if not account.is_active:
            raise AuthenticationError("Account is deactivated", code="account_inactive")
        if not account.is_email_verified:
            raise EmailNotVerifiedError()

        if not verify_password(password, account.hashed_password):
            self.lockout.register_failure(account, now)
            raise AuthenticationError(INVALID_CREDENTIALS, code="invalid_credentials")

        self.lockout.register_success(account, now)
        access_token = self.issuer.issue_access_token(account.id, account.token_version)
        refresh_token = self.issuer.issue_refresh_token(account.id, account.token_version)
        self.sessions.add_session(account, refresh_token, device_label)
        logger.info("Login for account %s", account.id)
        return LoginResult(access_token, refresh_token, self.store.get_by_id(account.id))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> AuthContext:
        """Resolve a bearer access token to the live account it was issued for."""
        claims = self.issuer.verify(access_token, expected_type=ACCESS_TOKEN)
        account = self.store.get_by_id(claims.account_id)
        if account is None:
            raise AuthenticationError("Not authorized to access this route")
        if not account.is_active:
            raise AuthenticationError("User account is deactivated", code="account_inactive")
        if claims.token_version != account.token_version:
            raise InvalidTokenError(TOKEN_INVALIDATED)
        return AuthContext(account=account, claims=claims)

    def refresh(self, refresh_token: str) -> str:
        """Exchange a live refresh token for a new access token. No rotation."""
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        claims = self.issuer.verify(refresh_token, expected_type=REFRESH_TOKEN)
        account = self.store.get_by_id(claims.account_id)
        if account is None or not account.is_active:
            raise AuthenticationError("User not found or inactive")
        if claims.token_version != account.token_version:
            raise InvalidTokenError(TOKEN_INVALIDATED)
        if not self.sessions.validate_session(account, refresh_token):
            raise AuthenticationError("Invalid or expired refresh token", code="invalid_token")
        return self.issuer.issue_access_token(account.id, account.token_version)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, account: Account, refresh_token: Optional[str]) -> None:
        """Revoke one refresh session of this account. Unknown tokens are a no-op."""
        if refresh_token:
            self.sessions.remove_session(account, refresh_token)

    def logout_all(self, account: Account) -> None:
        removed = self.sessions.clear_all_sessions(account)
        self._record(ActivityType.LOGOUT_ALL, f"Logged out from all devices ({removed} sessions)", account.id)

    # ------------------------------------------------------------------
    # Password reset and change
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str:
        """Mail a reset OTP if the account exists. Returns the same message either way."""
        if not email:
            raise ValidationError("Email is required")
        account = self.store.get_by_email(email)
        if account is None:
            logger.info("Password reset requested for unknown email %s", redact_email(email))
            return RESET_REQUESTED_MESSAGE
        otp = self.verification.issue_password_reset(account)
        self.mailer.send_password_reset_email(account.email, otp)
        return RESET_REQUESTED_MESSAGE

    def reset_password_with_otp(self, email: str, otp: str, new_password: str) -> None:
        if not email or not otp or not new_password:
            raise ValidationError("Email, OTP, and new password are required")
        account = self.verification.reset_password(email, otp, new_password)
        self._record(ActivityType.PASSWORD_RESET, "Password reset with OTP", account.id)

    def change_password(self, account: Account, current_password: str, new_password: str) -> None:
        """Rotate the password; every token and session of the account dies with it."""
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required")
        validate_password_strength(new_password)
        stored = self.store.get_by_id(account.id)
        if stored is None:
            raise NotFoundError("User not found")
        if not verify_password(current_password, stored.hashed_password):
            raise ValidationError("Current password is incorrect", code="invalid_current_password")
        self.store.change_password(account.id, hash_password(new_password))
        self._record(ActivityType.PASSWORD_CHANGED, "Password changed", account.id)

    # ------------------------------------------------------------------
    # Administration (admin routes and CLI)
    # ------------------------------------------------------------------

    def create_admin(self, email: str, password: str, name: Optional[str] = None) -> Account:
        """Create a pre-verified ADMIN account."""
        email = _validate_email(email)
        validate_password_strength(password)
        account_id = self.store.create_account(
            Account(
                email=email,
                hashed_password=hash_password(password),
                name=_validate_name(name),
                role=Role.ADMIN,
                is_email_verified=True,
            )
        )
        return self.store.get_by_id(account_id)

    def list_accounts(self) -> list[Account]:
        return self.store.list_accounts()

    def update_account(
        self,
        actor: Account,
        account_id: str,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> Account:
        """Change role and/or active flag. Admin only (enforced by the route).

        Blocks self-deactivation and removing the last active admin.
        Deactivation bumps token_version and drops sessions so existing
        tokens stop working immediately.
        """
        target = self.store.get_by_id(account_id)
        if target is None:
            raise NotFoundError("User not found")

        updates: dict = {}
        losing_admin = target.role == Role.ADMIN and target.is_active and (
            (role is not None and role != Role.ADMIN) or is_active is False
        )
        if is_active is False and target.id == actor.id:
            raise ValidationError("You cannot deactivate your own account.", code="self_deactivation")
        if losing_admin and self.store.count_active_admins() <= 1:
            raise ValidationError("Cannot remove the last active admin account.", code="last_admin")
        if role is not None:
            updates["role"] = role
        if is_active is not None:
            updates["is_active"] = is_active
        if not updates:
            raise ValidationError("No fields to update.", code="no_changes")

        self.store.update_account(account_id, **updates)
        if is_active is False and target.is_active:
            self.store.bump_token_version(account_id)
            self.store.clear_sessions(account_id)
        self._record(
            ActivityType.ACCOUNT_UPDATED,
            f"Account {target.email} updated by {actor.email}",
            account_id,
            {key: (value.value if isinstance(value, Role) else value) for key, value in updates.items()},
        )
        return self.store.get_by_id(account_id)

    def unlock_account(self, email: str) -> Account:
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFoundError("User not found")
        self.lockout.unlock(account)
        return self.store.get_by_id(account.id)

    def revoke_all_tokens(self, email: str) -> Account:
        """Global revocation: bump token_version and drop every session."""
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFoundError("User not found")
        self.store.bump_token_version(account.id)
        self.sessions.clear_all_sessions(account)
        return self.store.get_by_id(account.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, activity_type: ActivityType, message: str, account_id: str, metadata: Optional[dict] = None) -> None:
        self.store.record_activity(
            Activity(type=activity_type, message=message, account_id=account_id, metadata=metadata or {})
        )


def _validate_email(email: str) -> str:
    email = normalize_email(email)
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValidationError("Please enter a valid email", code="invalid_email")
    return email


def _validate_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name cannot exceed {MAX_NAME_LENGTH} characters")
    return name or None
