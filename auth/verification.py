"""
auth/verification.py -- Single-use, time-boxed secrets: email verification and reset OTP.

Both flows share one design:
  1. Generate a random secret, store only its SHA-256 plus an expiry.
  2. Hand the raw secret to the caller, who mails it to the account owner.
  3. On redemption, hash the candidate and let the store match hash AND
     unexpired expiry in one conditional UPDATE that also clears the secret.

Failures never say which part was wrong (unknown email, wrong secret,
expired, already used) -- there is exactly one message per flow.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from auth.errors import ValidationError
from auth.models import Account
from auth.passwords import hash_password, validate_password_strength
from auth.store import AccountStore
from auth.tokens import generate_otp, generate_verification_token, hash_secret, utcnow

logger = logging.getLogger("marketplace.auth.verification")

DEFAULT_VERIFICATION_TTL = timedelta(hours=24)
DEFAULT_RESET_TTL = timedelta(minutes=10)

INVALID_VERIFICATION_MESSAGE = "Invalid or expired verification token"
INVALID_OTP_MESSAGE = "Invalid or expired OTP"


class VerificationFlow:
    def __init__(
        self,
        store: AccountStore,
        verification_ttl: timedelta = DEFAULT_VERIFICATION_TTL,
        reset_ttl: timedelta = DEFAULT_RESET_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def issue_email_verification(self, account: Account) -> str:
        """Store a fresh verification secret (replacing any pending one); return the raw token."""
        token = generate_verification_token()
        self._store.set_email_verification(account.id, hash_secret(token), self._clock() + self.verification_ttl)
        return token

    def confirm_email(self, email: str, token: str) -> str:
        """Consume the verification secret. Returns the verified account id."""
        if not email or not token:
            raise ValidationError("Token and email are required")
        account_id = self._store.consume_email_verification(email, hash_secret(token), self._clock())
        if account_id is None:
            raise ValidationError(INVALID_VERIFICATION_MESSAGE, code="invalid_verification_token")
        logger.info("Email verified for account %s", account_id)
        return account_id

    # ------------------------------------------------------------------
    # Password reset OTP
    # ------------------------------------------------------------------

    def issue_password_reset(self, account: Account) -> str:
        """Store a fresh OTP (replacing any pending one); return the raw code."""
        otp = generate_otp()
        self._store.set_password_reset(account.id, hash_secret(otp), self._clock() + self.reset_ttl)
        return otp

    def reset_password(self, email: str, otp: str, new_password: str) -> Account:
        """Consume the OTP and set a new password.

        The strength check runs before the OTP is looked at, so a weak
        password never burns a valid code. On success the store has already
        bumped token_version and removed every refresh session.
        """
        validate_password_strength(new_password)
        account = self._store.consume_password_reset(
            email, hash_secret(otp.strip()), hash_password(new_password), self._clock()
        )
        if account is None:
            raise ValidationError(INVALID_OTP_MESSAGE, code="invalid_otp")
        logger.info("Password reset for account %s (token_version=%d)", account.id, account.token_version)
        return account
