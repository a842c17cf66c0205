from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from identity_service.config import DatabaseSettings
from identity_service.database import DuplicateIdentifierError, RecordStore
from identity_service.errors import StoreUnavailableError
from identity_service.models import UserOrigin


def _insert_legacy_user(store: RecordStore, identifier: str) -> int:
    conn = sqlite3.connect(store.settings.path)
    try:
        with conn:
            cursor = conn.execute(
                "INSERT INTO legacy_users (ldap_uid_id, display_name, created_at) VALUES (?, ?, ?)",
                (identifier, "Legacy", "2020-01-01T00:00:00+00:00"),
            )
        return int(cursor.lastrowid)
    finally:
        conn.close()


def test_initialize_creates_all_tables(store: RecordStore) -> None:
    conn = sqlite3.connect(store.settings.path)
    try:
        names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()

    assert {"user_main_details", "legacy_users", "password_resets"} <= names


def test_insert_and_resolve_draft_user(store: RecordStore) -> None:
    record = store.insert_draft_user("alice", "Alice A")

    assert record.user_id > 0
    assert record.origin is UserOrigin.PRIMARY
    assert record.last_login_at is not None

    found = store.find_user_by_identifier("  alice ")
    assert found is not None
    assert found.user_id == record.user_id
    assert found.display_name == "Alice A"


def test_duplicate_identifier_is_rejected(store: RecordStore) -> None:
    store.insert_draft_user("alice", None)

    with pytest.raises(DuplicateIdentifierError):
        store.insert_draft_user("alice", "Other")


def test_fallback_table_is_consulted_after_primary(store: RecordStore) -> None:
    legacy_id = _insert_legacy_user(store, "bob")

    found = store.find_user_by_identifier("bob")

    assert found is not None
    assert found.origin is UserOrigin.FALLBACK
    assert found.user_id == legacy_id

    store.insert_draft_user("bob", "Primary Bob")
    assert store.find_user_by_identifier("bob").origin is UserOrigin.PRIMARY


def test_unknown_or_blank_identifier_resolves_to_none(store: RecordStore) -> None:
    assert store.find_user_by_identifier("nobody") is None
    assert store.find_user_by_identifier("   ") is None


def test_delete_user_removes_only_the_draft(store: RecordStore) -> None:
    keep = store.insert_draft_user("keep", None)
    drop = store.insert_draft_user("drop", None)

    assert store.delete_user(drop.user_id) is True
    assert store.delete_user(drop.user_id) is False
    assert store.find_user_by_identifier("drop") is None
    assert store.find_user_by_identifier("keep") == keep


def test_update_last_login(store: RecordStore) -> None:
    record = store.insert_draft_user("alice", None)
    when = datetime(2026, 2, 3, 4, 5, 6, tzinfo=timezone.utc)

    store.update_last_login(record, when)

    assert store.find_user_by_identifier("alice").last_login_at == when


def test_reset_ledger_lifecycle(store: RecordStore) -> None:
    record = store.insert_draft_user("alice", None)
    first_expiry = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)
    second_expiry = first_expiry + timedelta(minutes=30)

    assert store.get_reset_ledger(record) is None
    assert store.mark_reset_consumed(record) is False

    store.upsert_reset_ledger(record, first_expiry)
    store.upsert_reset_ledger(record, second_expiry)
    ledger = store.get_reset_ledger(record)
    assert ledger is not None
    assert ledger.token_outstanding is True
    assert ledger.used is False
    assert ledger.expires_at == second_expiry
    assert ledger.is_usable(second_expiry - timedelta(seconds=1))
    assert not ledger.is_usable(second_expiry)

    assert store.mark_reset_consumed(record) is True
    assert store.mark_reset_consumed(record) is False
    consumed = store.get_reset_ledger(record)
    assert consumed.used is True
    assert consumed.token_outstanding is False
    assert not consumed.is_usable(first_expiry)


def test_ledger_rows_are_keyed_by_origin(store: RecordStore) -> None:
    primary = store.insert_draft_user("alice", None)
    legacy_id = _insert_legacy_user(store, "bob")
    legacy = store.find_user_by_identifier("bob")
    assert legacy is not None
    assert legacy.origin is UserOrigin.FALLBACK
    assert legacy.user_id == legacy_id
    expiry = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)

    assert legacy.user_id == primary.user_id

    store.upsert_reset_ledger(primary, expiry)
    assert store.get_reset_ledger(legacy) is None

    store.upsert_reset_ledger(legacy, expiry)
    store.mark_reset_consumed(legacy)
    assert store.get_reset_ledger(primary).used is False
    assert store.get_reset_ledger(legacy).used is True


def test_unreachable_database_raises_store_unavailable(tmp_path: Path) -> None:
    blocked = tmp_path / "blocked"
    blocked.mkdir()
    store = RecordStore(DatabaseSettings(path=blocked))

    with pytest.raises(StoreUnavailableError):
        store.ping()
