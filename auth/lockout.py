"""
auth/lockout.py -- Per-account lockout after repeated failed logins.

State machine (per account):

    Unlocked --bad password--> Unlocked (failed_login_count += 1)
    Unlocked --bad password, count reaches max_attempts--> Locked (lock_until = now + lock_duration)
    Locked   --any attempt before lock_until--> Locked (no password check, no count)
    Locked   --lock_until elapses--> Unlocked on the next attempt
    any      --good password--> Unlocked (count = 0, lock_until cleared)

A failure after an elapsed lock restarts the count at 1 (the store handles
that inside the same UPDATE). This is independent of the per-client rate
limit enforced at the HTTP edge.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.models import Account
from auth.store import AccountStore

logger = logging.getLogger("marketplace.auth.lockout")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_DURATION = timedelta(minutes=30)


class LockoutPolicy:
    def __init__(
        self,
        store: AccountStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.is_locked(now)

    def register_failure(self, account: Account, now: datetime) -> bool:
        """Count one bad password. Returns True if this failure locked the account."""
        count = self._store.increment_failed_logins(account.id, now)
        if count >= self.max_attempts:
            until = now + self.lock_duration
            self._store.lock_account(account.id, until)
            logger.warning("Account %s locked until %s after %d failed logins", account.id, until.isoformat(), count)
            return True
        return False

    def register_success(self, account: Account, now: datetime) -> None:
        self._store.reset_login_state(account.id, now)

    def unlock(self, account: Account) -> None:
        """Clear the lock and the counter without recording a login (admin/CLI)."""
        self._store.reset_login_state(account.id)
