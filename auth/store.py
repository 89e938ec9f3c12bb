"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_session /
_row_to_activity are the mappers. Service and route code never touches SQL.

Concurrency:
  Requests run concurrently with no in-process locking. Every operation that
  consumes something single-use (verification secret, reset OTP) is ONE
  conditional UPDATE whose WHERE clause re-checks the hash and the expiry, so
  two racing consumers cannot both see rowcount == 1. Multi-statement
  mutations (password change, reset + session wipe, session insert + trim)
  run inside engine.begin() so they commit or roll back as a unit.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of secrets are stored: bcrypt for passwords, SHA-256 for the
  verification token, the reset OTP and refresh tokens.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision always present) so string comparison in SQL matches time order.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmailError
from auth.models import Account, Activity, ActivityType, RefreshSession, Role

_DEFAULT_DB_URL = "sqlite:///marketplace_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("name", String(50)),
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("email_verification_hash", String(64), index=True),  # SHA-256 hex
    Column("email_verification_expires_at", String(32)),
    Column("password_reset_hash", String(64)),  # SHA-256 hex of the OTP
    Column("password_reset_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False),  # SHA-256 hex of the JWT
    Column("device_label", String(255), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_activities = Table(
    "activities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(40), nullable=False),
    Column("message", String(500), nullable=False),
    Column("account_id", String(32), index=True),
    Column("metadata_json", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, RefreshSession and Activity entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(email="a@x.com", hashed_password=hash_password("...")))
        account = store.get_by_email("A@x.com")
        store.close()
    """

    # Columns update_account() may touch. Everything security-relevant
    # (password, secrets, token_version, lockout) has a dedicated method.
    _UPDATABLE_FIELDS: set = {"name", "role", "is_active"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> str:
        """Insert a new account and return its opaque id.

        Raises DuplicateEmailError if the (normalised) email already exists.
        The UNIQUE index is the source of truth: two concurrent registrations
        for the same email both pass the service-level pre-check, and exactly
        one of them loses here.
        """
        account_id = account.id or uuid.uuid4().hex
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account_id,
                        email=normalize_email(account.email),
                        hashed_password=account.hashed_password,
                        name=account.name,
                        role=account.role.value,
                        is_active=1 if account.is_active else 0,
                        is_email_verified=1 if account.is_email_verified else 0,
                        token_version=account.token_version,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmailError() from exc
        return account_id

    def get_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email. Case and surrounding whitespace are ignored."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: str, **fields) -> bool:
        """Update profile/admin fields (name, role, is_active).

        Unknown keys raise ValueError rather than being silently ignored.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == Role.ADMIN.value) & (_accounts.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Password and token version
    # ------------------------------------------------------------------

    def change_password(self, account_id: str, hashed_password: str) -> bool:
        """Store a new password hash, bump token_version and drop every session."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    hashed_password=hashed_password,
                    token_version=_accounts.c.token_version + 1,
                    updated_at=_now_iso(),
                )
            )
            if result.rowcount == 0:
                return False
            conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.account_id == account_id))
        return True

    def bump_token_version(self, account_id: str) -> bool:
        """Invalidate every outstanding token without touching the password."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(token_version=_accounts.c.token_version + 1, updated_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Email verification secret
    # ------------------------------------------------------------------

    def set_email_verification(self, account_id: str, token_hash: str, expires_at: datetime) -> None:
        """Replace any pending verification secret with a new one."""
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    email_verification_hash=token_hash,
                    email_verification_expires_at=_to_iso(expires_at),
                    updated_at=_now_iso(),
                )
            )

    def consume_email_verification(self, email: str, token_hash: str, now: datetime) -> str | None:
        """Mark the account verified if hash and expiry match. Single use.

        Returns the account id on success, None when nothing matched (wrong
        token, wrong email, expired, or already consumed).
        """
        email = normalize_email(email)
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    and_(
                        _accounts.c.email == email,
                        _accounts.c.email_verification_hash == token_hash,
                        _accounts.c.email_verification_expires_at > _to_iso(now),
                    )
                )
                .values(
                    is_email_verified=1,
                    email_verification_hash=null(),
                    email_verification_expires_at=null(),
                    updated_at=_now_iso(),
                )
            )
            if result.rowcount == 0:
                return None
            return conn.execute(select(_accounts.c.id).where(_accounts.c.email == email)).scalar()

    # ------------------------------------------------------------------
    # Password reset OTP
    # ------------------------------------------------------------------

    def set_password_reset(self, account_id: str, otp_hash: str, expires_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    password_reset_hash=otp_hash,
                    password_reset_expires_at=_to_iso(expires_at),
                    updated_at=_now_iso(),
                )
            )

    def consume_password_reset(
        self, email: str, otp_hash: str, hashed_password: str, now: datetime
    ) -> Account | None:
        """Swap the password if the OTP matches and has not expired. Single use.

        In one transaction: set the new hash, clear the OTP, bump
        token_version, delete every refresh session. Returns the updated
        account, or None when nothing matched.
        """
        email = normalize_email(email)
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    and_(
                        _accounts.c.email == email,
                        _accounts.c.password_reset_hash == otp_hash,
                        _accounts.c.password_reset_expires_at > _to_iso(now),
                    )
                )
                .values(
                    hashed_password=hashed_password,
                    password_reset_hash=null(),
                    password_reset_expires_at=null(),
                    token_version=_accounts.c.token_version + 1,
                    updated_at=_now_iso(),
                )
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
            conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.account_id == row.id))
        return _row_to_account(row)

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_failed_logins(self, account_id: str, now: datetime) -> int:
        """Atomically count one failed login and return the new count.

        If a previous lock has already elapsed, the counter restarts at 1 and
        the stale lock_until is cleared in the same statement.
        """
        now_iso = _to_iso(now)
        lock_elapsed = and_(_accounts.c.lock_until.is_not(None), _accounts.c.lock_until <= now_iso)
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    failed_login_count=case((lock_elapsed, 1), else_=_accounts.c.failed_login_count + 1),
                    lock_until=case((lock_elapsed, null()), else_=_accounts.c.lock_until),
                    updated_at=_now_iso(),
                )
            )
            count = conn.execute(
                select(_accounts.c.failed_login_count).where(_accounts.c.id == account_id)
            ).scalar()
        return count or 0

    def lock_account(self, account_id: str, until: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(lock_until=_to_iso(until), updated_at=_now_iso())
            )

    def reset_login_state(self, account_id: str, now: Optional[datetime] = None) -> None:
        """Clear the failure counter and any lock. With `now`, also stamp last_login."""
        values: dict = {"failed_login_count": 0, "lock_until": null(), "updated_at": _now_iso()}
        if now is not None:
            values["last_login"] = _to_iso(now)
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def add_session(self, account_id: str, session: RefreshSession, max_sessions: int) -> None:
        """Record a refresh session and evict the oldest beyond max_sessions."""
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_sessions.insert().values(
                    account_id=account_id,
                    token_hash=session.token_hash,
                    device_label=session.device_label,
                    issued_at=_to_iso(session.issued_at),
                    expires_at=_to_iso(session.expires_at),
                )
            )
            stale_ids = (
                conn.execute(
                    select(_refresh_sessions.c.id)
                    .where(_refresh_sessions.c.account_id == account_id)
                    .order_by(_refresh_sessions.c.issued_at.desc(), _refresh_sessions.c.id.desc())
                    .offset(max_sessions)
                )
                .scalars()
                .all()
            )
            if stale_ids:
                conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.id.in_(stale_ids)))

    def get_session(self, account_id: str, token_hash: str) -> RefreshSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_sessions.select()
                .where((_refresh_sessions.c.account_id == account_id) & (_refresh_sessions.c.token_hash == token_hash))
                .order_by(_refresh_sessions.c.expires_at.desc())
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, account_id: str) -> list[RefreshSession]:
        """Return an account's sessions, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_sessions.select()
                .where(_refresh_sessions.c.account_id == account_id)
                .order_by(_refresh_sessions.c.issued_at, _refresh_sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def remove_session(self, account_id: str, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_sessions.delete().where(
                    (_refresh_sessions.c.account_id == account_id) & (_refresh_sessions.c.token_hash == token_hash)
                )
            )
        return result.rowcount > 0

    def clear_sessions(self, account_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.account_id == account_id))
        return result.rowcount

    def purge_expired_sessions(self, now: datetime) -> int:
        """Delete sessions whose refresh token has expired. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.expires_at <= _to_iso(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def record_activity(self, activity: Activity) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _activities.insert().values(
                    type=activity.type.value,
                    message=activity.message[:500],
                    account_id=activity.account_id,
                    metadata_json=json.dumps(activity.metadata),
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_activities(self, account_id: Optional[str] = None, limit: int = 50) -> list[Activity]:
        """Return recent activity entries, newest first."""
        query = _activities.select().order_by(_activities.c.created_at.desc(), _activities.c.id.desc()).limit(limit)
        if account_id is not None:
            query = query.where(_activities.c.account_id == account_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_activity(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        name=row.name,
        role=Role(row.role),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        token_version=row.token_version,
        failed_login_count=row.failed_login_count,
        lock_until=_from_iso(row.lock_until),
        last_login=_from_iso(row.last_login),
        email_verification_hash=row.email_verification_hash,
        email_verification_expires_at=_from_iso(row.email_verification_expires_at),
        password_reset_hash=row.password_reset_hash,
        password_reset_expires_at=_from_iso(row.password_reset_expires_at),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        device_label=row.device_label,
        issued_at=_from_iso(row.issued_at),
        expires_at=_from_iso(row.expires_at),
    )


def _row_to_activity(row) -> Activity:
    return Activity(
        id=row.id,
        type=ActivityType(row.type),
        message=row.message,
        account_id=row.account_id,
        metadata=json.loads(row.metadata_json) if row.metadata_json else {},
        created_at=_from_iso(row.created_at),
    )
