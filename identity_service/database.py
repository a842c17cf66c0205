"""SQLite-backed persistence for user records and the password reset ledger."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, Optional

from .config import DatabaseSettings
from .errors import StoreUnavailableError
from .models import ResetLedgerRow, UserOrigin, UserRecord

logger = logging.getLogger("identity.database")


class StoreError(RuntimeError):
    """Raised when the relational store rejects a write."""


class DuplicateIdentifierError(StoreError):
    """Raised when a draft row would reuse an existing identifier."""


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RecordStore:
    """Relational accessor for user records and reset attempts.

    Table names come from :class:`DatabaseSettings`, which validates them as
    plain identifiers. Every value is passed as a bound parameter.
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        _ensure_directory(settings.path)
        self._settings = settings
        self._users = settings.primary_user_table
        self._fallback = settings.fallback_user_table
        self._resets = settings.password_reset_table

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._settings.path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a unit of work that is committed on success and rolled back on error."""

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Unable to open the user database: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            raise StoreUnavailableError(f"User database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.transaction() as conn:
            conn.executescript(self._user_table_ddl(self._users))
            if self._fallback:
                conn.executescript(self._user_table_ddl(self._fallback))
            conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS {self._resets} (
                    user_id INTEGER NOT NULL,
                    user_origin TEXT NOT NULL DEFAULT 'primary',
                    reset_token INTEGER NOT NULL DEFAULT 0,
                    reset_token_expiry TEXT NOT NULL,
                    reset_used INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_origin, user_id)
                );
                """
            )
        logger.debug("Relational store initialised at %s", self._settings.path)

    @staticmethod
    def _user_table_ddl(table: str) -> str:
        return f"""
            CREATE TABLE IF NOT EXISTS {table} (
                user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                ldap_uid_id TEXT NOT NULL UNIQUE,
                display_name TEXT,
                last_login_at TEXT,
                created_at TEXT NOT NULL
            );
        """

    def ping(self) -> None:
        with self.transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    # ------------------------------------------------------------------
    # User records
    # ------------------------------------------------------------------
    def find_user_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        """Look up a user in the primary table, then the fallback table."""

        trimmed = identifier.strip()
        if not trimmed:
            return None

        with self.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._users} WHERE ldap_uid_id = ? LIMIT 1",
                (trimmed,),
            ).fetchone()
            if row is not None:
                return self._row_to_user(row, UserOrigin.PRIMARY)

            if self._fallback:
                row = conn.execute(
                    f"SELECT * FROM {self._fallback} WHERE ldap_uid_id = ? LIMIT 1",
                    (trimmed,),
                ).fetchone()
                if row is not None:
                    return self._row_to_user(row, UserOrigin.FALLBACK)
        return None

    def insert_draft_user(self, identifier: str, display_name: Optional[str]) -> UserRecord:
        """Insert a draft row in its own committed transaction and return it."""

        created_at = _current_timestamp()
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    f"""
                    INSERT INTO {self._users} (ldap_uid_id, display_name, last_login_at, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        identifier,
                        display_name,
                        _serialize_datetime(created_at),
                        _serialize_datetime(created_at),
                    ),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateIdentifierError(f"A user with identifier {identifier!r} already exists") from exc

        return UserRecord(
            user_id=int(user_id),
            identifier=identifier,
            display_name=display_name,
            last_login_at=created_at,
            origin=UserOrigin.PRIMARY,
        )

    def delete_user(self, user_id: int) -> bool:
        """Delete a primary-table row. Only used to undo a failed registration."""

        with self.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {self._users} WHERE user_id = ?", (user_id,))
            return cursor.rowcount > 0

    def update_last_login(self, user: UserRecord, when: Optional[datetime] = None) -> None:
        table = self._table_for(user.origin)
        if table is None:
            return
        timestamp = _serialize_datetime(when or _current_timestamp())
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE {table} SET last_login_at = ? WHERE user_id = ?",
                (timestamp, user.user_id),
            )

    # ------------------------------------------------------------------
    # Password reset ledger
    # ------------------------------------------------------------------
    def upsert_reset_ledger(self, user: UserRecord, expires_at: datetime) -> None:
        """Record an outstanding token, replacing any earlier attempt for the user."""

        now = _serialize_datetime(_current_timestamp())
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO {self._resets} (
                    user_id, user_origin, reset_token, reset_token_expiry, reset_used, updated_at
                )
                VALUES (?, ?, 1, ?, 0, ?)
                ON CONFLICT (user_origin, user_id) DO UPDATE SET
                    reset_token = 1,
                    reset_token_expiry = excluded.reset_token_expiry,
                    reset_used = 0,
                    updated_at = excluded.updated_at
                """,
                (user.user_id, user.origin.value, _serialize_datetime(expires_at), now),
            )

    def mark_reset_consumed(self, user: UserRecord) -> bool:
        now = _serialize_datetime(_current_timestamp())
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {self._resets}
                   SET reset_used = 1, reset_token = 0, updated_at = ?
                 WHERE user_id = ? AND user_origin = ? AND reset_used = 0
                """,
                (now, user.user_id, user.origin.value),
            )
            return cursor.rowcount > 0

    def get_reset_ledger(self, user: UserRecord) -> Optional[ResetLedgerRow]:
        with self.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._resets} WHERE user_id = ? AND user_origin = ?",
                (user.user_id, user.origin.value),
            ).fetchone()
        if row is None:
            return None
        return ResetLedgerRow(
            user_id=int(row["user_id"]),
            origin=UserOrigin(row["user_origin"]),
            token_outstanding=bool(row["reset_token"]),
            expires_at=_parse_datetime(str(row["reset_token_expiry"])),
            used=bool(row["reset_used"]),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _table_for(self, origin: UserOrigin) -> Optional[str]:
        if origin is UserOrigin.PRIMARY:
            return self._users
        return self._fallback

    def _row_to_user(self, row: sqlite3.Row, origin: UserOrigin) -> UserRecord:
        return UserRecord(
            user_id=int(row["user_id"]),
            identifier=str(row["ldap_uid_id"]),
            display_name=row["display_name"],
            last_login_at=_parse_datetime(row["last_login_at"]),
            origin=origin,
        )


__all__ = ["DuplicateIdentifierError", "RecordStore", "StoreError"]
