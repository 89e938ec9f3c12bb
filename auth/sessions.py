"""
auth/sessions.py -- Live refresh tokens per account (one entry per device/session).

Only the SHA-256 of a refresh token is recorded. Validation requires the
hash to be present AND the recorded expiry to be in the future, on top of
the JWT's own signature/expiry/version checks done by the service.

Refresh tokens are not rotated on use: /refresh-token mints a new access
token and leaves the refresh session untouched until it expires or is
revoked by logout, logout-all, password change or reset.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from auth.models import Account, RefreshSession
from auth.store import AccountStore
from auth.tokens import DEFAULT_REFRESH_TTL, hash_secret, utcnow

DEFAULT_MAX_SESSIONS = 5
UNKNOWN_DEVICE = "Unknown Device"


class SessionManager:
    def __init__(
        self,
        store: AccountStore,
        refresh_ttl: timedelta = DEFAULT_REFRESH_TTL,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.refresh_ttl = refresh_ttl
        self.max_sessions = max_sessions
        self._clock = clock

    def add_session(self, account: Account, refresh_token: str, device_label: str | None = None) -> RefreshSession:
        """Record a session. Same device label twice means two sessions, not one.

        Once an account holds max_sessions entries the oldest one is evicted.
        """
        now = self._clock()
        session = RefreshSession(
            token_hash=hash_secret(refresh_token),
            device_label=(device_label or UNKNOWN_DEVICE)[:255],
            issued_at=now,
            expires_at=now + self.refresh_ttl,
            account_id=account.id,
        )
        self._store.add_session(account.id, session, self.max_sessions)
        return session

    def validate_session(self, account: Account, refresh_token: str) -> bool:
        session = self._store.get_session(account.id, hash_secret(refresh_token))
        return session is not None and session.expires_at > self._clock()

    def remove_session(self, account: Account, refresh_token: str) -> bool:
        return self._store.remove_session(account.id, hash_secret(refresh_token))

    def clear_all_sessions(self, account: Account) -> int:
        return self._store.clear_sessions(account.id)

    def list_sessions(self, account: Account) -> list[RefreshSession]:
        return self._store.list_sessions(account.id)
