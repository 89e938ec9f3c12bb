"""
auth/tokens.py -- JWT issuing/verification and single-use secret helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with the
       same SECRET_KEY and carry account id (sub), token version (ver), a
       type claim ("access" / "refresh"), a random jti and the expiry. The
       type claim is what keeps a refresh token from being used as a bearer
       credential and vice versa -- every consumer passes expected_type.

  Token version: the ver claim pins a token to the account's token_version
       at issue time. The issuer does not know the current version; the
       service compares ver against the store on every use.

  Secrets at rest: the email verification token, the reset OTP and refresh
       tokens are stored as SHA-256 hex. They are either high-entropy (token,
       JWT) or short-lived and rate-limited (OTP), so a fast deterministic
       hash is enough and allows lookup by equality.

  SECRET_KEY: injected by the caller (built from core.config.Settings once at
       startup). The constructor refuses keys shorter than 32 bytes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ExpiredTokenError, InvalidTokenError
from auth.models import TokenClaims

logger = logging.getLogger("marketplace.auth.tokens")

_ALGORITHM = "HS256"
MIN_SECRET_KEY_BYTES = 32

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

DEFAULT_ACCESS_TTL = timedelta(minutes=15)
DEFAULT_REFRESH_TTL = timedelta(days=30)

OTP_DIGITS = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# JWT issue / verify
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies signed access and refresh tokens.

    Usage:
        issuer = TokenIssuer(settings.secret_key)
        token = issuer.issue_access_token(account.id, account.token_version)
        claims = issuer.verify(token, expected_type="access")
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl: timedelta = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret_key or len(secret_key.encode("utf-8")) < MIN_SECRET_KEY_BYTES:
            raise ValueError(f"Token signing key must be at least {MIN_SECRET_KEY_BYTES} bytes.")
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def issue_access_token(self, account_id: str, token_version: int) -> str:
        return self._issue(account_id, token_version, ACCESS_TOKEN, self.access_ttl)

    def issue_refresh_token(self, account_id: str, token_version: int) -> str:
        return self._issue(account_id, token_version, REFRESH_TOKEN, self.refresh_ttl)

    def _issue(self, account_id: str, token_version: int, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": account_id,
            "ver": token_version,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            # Two tokens minted for the same account in the same second must
            # still differ; session lookup is by hash.
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str, expected_type: str | None = None) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises ExpiredTokenError for an expired but otherwise valid token and
        InvalidTokenError for everything else (bad signature, malformed,
        missing claims, wrong type). A token without a type claim never
        satisfies an expected_type check.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise ExpiredTokenError() from exc
        except JWTError as exc:
            raise InvalidTokenError() from exc

        account_id = payload.get("sub")
        token_version = payload.get("ver")
        token_type = payload.get("type")
        if not isinstance(account_id, str) or not account_id or not isinstance(token_version, int):
            raise InvalidTokenError()
        if expected_type is not None and token_type != expected_type:
            raise InvalidTokenError("Invalid token type")
        return TokenClaims(
            account_id=account_id,
            token_version=token_version,
            token_type=token_type or "",
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=payload.get("jti", ""),
        )


# ---------------------------------------------------------------------------
# Single-use secrets
# ---------------------------------------------------------------------------


def hash_secret(raw: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw secret."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_verification_token() -> str:
    """32 random bytes as 64 hex chars -- sent by email as part of a link."""
    return secrets.token_hex(32)


def generate_otp() -> str:
    """Six-digit numeric code for password reset. Never starts with 0."""
    low = 10 ** (OTP_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))
