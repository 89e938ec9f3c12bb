"""
auth/passwords.py -- Password hashing and password strength policy.

Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
brute-force of low-entropy secrets expensive. The _DUMMY_HASH constant lets
the login flow burn the same bcrypt work for unknown emails as for real ones,
so response time does not reveal whether an account exists.

Strength policy is applied on every path that sets a password: registration,
OTP reset and authenticated change.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import ValidationError

MIN_PASSWORD_LENGTH = 8
# bcrypt refuses input longer than 72 bytes.
MAX_PASSWORD_BYTES = 72
PASSWORD_SYMBOLS = "@$!%*?&"

_BCRYPT_ROUNDS = 12
_ALLOWED_CHARS_RE = re.compile(r"[A-Za-z0-9@$!%*?&]+")


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("marketplace_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison without a real account."""
    verify_password(plain, _DUMMY_HASH)


def validate_password_strength(password: str) -> None:
    """Raise ValidationError describing the first rule the password breaks."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
            code="weak_password",
        )
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes long",
            code="weak_password",
        )
    if not _ALLOWED_CHARS_RE.fullmatch(password):
        raise ValidationError(
            f"Password may only contain letters, digits and the symbols {PASSWORD_SYMBOLS}",
            code="weak_password",
        )
    missing = []
    if not any(c.islower() for c in password):
        missing.append("a lowercase letter")
    if not any(c.isupper() for c in password):
        missing.append("an uppercase letter")
    if not any(c.isdigit() for c in password):
        missing.append("a number")
    if not any(c in PASSWORD_SYMBOLS for c in password):
        missing.append(f"a special character ({PASSWORD_SYMBOLS})")
    if missing:
        raise ValidationError(
            "Password must contain at least 8 characters with uppercase, lowercase, number and "
            f"special character (missing {', '.join(missing)})",
            code="weak_password",
        )
