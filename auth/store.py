"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account is the mapper. The service
and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is a partial unique index on email WHERE deleted_at IS NULL.
  That index is the only authority -- email_exists() is an advisory
  fast-path for nicer errors and is inherently racy. create_account() turns
  the index violation into DuplicateEmail.

  Single-use token consumption is one conditional UPDATE:
      SET <flag>, token = NULL, expires_at = NULL
      WHERE token = :t AND expires_at > :now AND deleted_at IS NULL
  executed in a single transaction. rowcount tells the caller whether it won.
  Two concurrent submissions of the same token cannot both match, because the
  first commit clears the token the second one is filtering on. Never split
  this into a SELECT followed by an UPDATE.

  Soft-deleted rows are filtered out of every lookup, mutation, and consume.

Concurrency:
  SQLite allows one writer at a time and, in shared-cache mode, reports
  contention as an immediate "table is locked" error rather than waiting. Write
  transactions against SQLite are therefore serialized through a per-store
  lock. Other dialects rely on the database's own row locking.

Timestamps are UTC ISO-8601 strings with fixed microsecond precision, so
string comparison in SQL orders them chronologically.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AccountNotFound, DuplicateEmail, StoreError
from auth.models import Account

logger = logging.getLogger("authcore.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authcore_accounts.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("date_of_birth", String(10), nullable=False, server_default=""),
    Column("gender", String(20), nullable=False, server_default=""),
    Column("bio", Text),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("email_verification_token", String(64)),
    Column("email_verification_expires_at", String(32)),
    Column("password_reset_token", String(64)),
    Column("password_reset_expires_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft-delete tombstone
)

Index(
    "uq_accounts_email_live",
    _accounts.c.email,
    unique=True,
    sqlite_where=_accounts.c.deleted_at.is_(None),
    postgresql_where=_accounts.c.deleted_at.is_(None),
)
Index("ix_accounts_verification_token", _accounts.c.email_verification_token)
Index("ix_accounts_reset_token", _accounts.c.password_reset_token)

# Columns update_profile() may write. Anything else raises ValueError.
_PROFILE_FIELDS = frozenset({"full_name", "date_of_birth", "gender", "bio"})
# Profile columns declared NOT NULL. Only bio may be cleared.
_REQUIRED_PROFILE_FIELDS = frozenset({"full_name", "date_of_birth", "gender"})


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with fixed microsecond precision (sortable as text)."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookup: stripped and lower-cased."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records and their single-use tokens.

    Usage:
        store = AccountStore("sqlite:///accounts.db")
        account_id = store.create_account(Account(email="a@x.com", password_hash=h))
        store.consume_verification_token(token)   # True exactly once
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._write_lock = threading.Lock() if is_sqlite else None
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _read(self, op: str) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Store read failed: %s", op)
            raise StoreError(f"{op} failed") from exc

    @contextmanager
    def _write(self, op: str) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on exit, roll back on error.

        IntegrityError propagates unwrapped so callers can map constraint
        violations to domain errors.
        """
        with self._write_lock or nullcontext():
            try:
                with self.engine.begin() as conn:
                    yield conn
            except IntegrityError:
                raise
            except SQLAlchemyError as exc:
                logger.error("Store write failed: %s", op)
                raise StoreError(f"{op} failed") from exc

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> str:
        """Insert a new account and return its generated id.

        Any verification token pair already set on the record is written in
        the same INSERT. Raises DuplicateEmail if a live account already owns
        the email -- this is the authoritative uniqueness check.
        """
        account_id = str(uuid.uuid4())
        now = _now_iso()
        try:
            with self._write("create_account") as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account_id,
                        email=normalize_email(account.email),
                        password_hash=account.password_hash,
                        full_name=account.full_name,
                        date_of_birth=account.date_of_birth,
                        gender=account.gender,
                        bio=account.bio,
                        verified=1 if account.verified else 0,
                        active=1 if account.active else 0,
                        email_verification_token=account.email_verification_token,
                        email_verification_expires_at=account.email_verification_expires_at,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateEmail() from exc
        return account_id

    def get_by_id(self, account_id: str) -> Account:
        """Return the live account with this id. Raises AccountNotFound."""
        with self._read("get_by_id") as conn:
            row = conn.execute(
                _accounts.select().where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
            ).fetchone()
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    def get_by_email(self, email: str) -> Account:
        """Return the live account with this email (case-insensitive). Raises AccountNotFound."""
        with self._read("get_by_email") as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.email == normalize_email(email)) & _accounts.c.deleted_at.is_(None)
                )
            ).fetchone()
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    def email_exists(self, email: str) -> bool:
        """Advisory only. A False here does not guarantee create_account() will succeed."""
        with self._read("email_exists") as conn:
            row = conn.execute(
                select(_accounts.c.id)
                .where((_accounts.c.email == normalize_email(email)) & _accounts.c.deleted_at.is_(None))
            ).fetchone()
        return row is not None

    def update_profile(self, account_id: str, **fields) -> Account:
        """Update profile fields on a live account and return the fresh record.

        Accepted fields: full_name, date_of_birth, gender, bio. Unknown keys
        raise ValueError rather than being ignored -- column names must come
        from the whitelist, never from request input. None is accepted for
        bio only; the other fields are NOT NULL and raise ValueError too.
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)!r}")
        cleared = sorted(f for f in _REQUIRED_PROFILE_FIELDS if f in fields and fields[f] is None)
        if cleared:
            raise ValueError(f"Profile fields cannot be null: {cleared!r}")
        if fields:
            with self._write("update_profile") as conn:
                result = conn.execute(
                    _accounts.update()
                    .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                    .values(updated_at=_now_iso(), **fields)
                )
            if result.rowcount == 0:
                raise AccountNotFound()
        return self.get_by_id(account_id)

    def mark_last_login(self, account_id: str) -> None:
        """Stamp last_login_at with the current UTC time."""
        with self._write("mark_last_login") as conn:
            conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(last_login_at=_now_iso())
            )

    def set_active(self, account_id: str, active: bool) -> bool:
        """Enable or disable an account. Returns False if no live account matched."""
        with self._write("set_active") as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(active=1 if active else 0, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def soft_delete(self, account_id: str) -> bool:
        """Tombstone an account. Only deleted_at is written; the row is kept.

        Returns False if the account does not exist or is already deleted.
        The email becomes free for a new registration immediately, because the
        unique index only covers live rows.
        """
        now = _now_iso()
        with self._write("soft_delete") as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(deleted_at=now)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def set_verification_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        """Overwrite the verification token pair. Any earlier token stops working."""
        with self._write("set_verification_token") as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(email_verification_token=token, email_verification_expires_at=format_timestamp(expires_at))
            )
        if result.rowcount == 0:
            raise AccountNotFound()

    def consume_verification_token(self, token: str) -> bool:
        """Atomically mark the owning account verified and clear the token.

        Returns True for exactly one caller per live, unexpired token; False for
        unknown, already-consumed, expired, or tombstoned-account tokens.
        """
        if not token:
            return False
        now = _now_iso()
        with self._write("consume_verification_token") as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.email_verification_token == token)
                    & (_accounts.c.email_verification_expires_at > now)
                    & _accounts.c.deleted_at.is_(None)
                )
                .values(
                    verified=1,
                    email_verification_token=None,
                    email_verification_expires_at=None,
                    updated_at=now,
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def set_password_reset_token(self, account_id: str, token: str, expires_at: datetime) -> None:
        """Overwrite the reset token pair. Any earlier token stops working."""
        with self._write("set_password_reset_token") as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & _accounts.c.deleted_at.is_(None))
                .values(password_reset_token=token, password_reset_expires_at=format_timestamp(expires_at))
            )
        if result.rowcount == 0:
            raise AccountNotFound()

    def consume_password_reset_token(self, token: str, new_password_hash: str) -> bool:
        """Atomically replace the password hash and clear the reset token."""
        if not token:
            return False
        now = _now_iso()
        with self._write("consume_password_reset_token") as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.password_reset_token == token)
                    & (_accounts.c.password_reset_expires_at > now)
                    & _accounts.c.deleted_at.is_(None)
                )
                .values(
                    password_hash=new_password_hash,
                    password_reset_token=None,
                    password_reset_expires_at=None,
                    updated_at=now,
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        full_name=row.full_name,
        date_of_birth=row.date_of_birth,
        gender=row.gender,
        bio=row.bio,
        verified=bool(row.verified),
        active=bool(row.active),
        email_verification_token=row.email_verification_token,
        email_verification_expires_at=row.email_verification_expires_at,
        password_reset_token=row.password_reset_token,
        password_reset_expires_at=row.password_reset_expires_at,
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )
