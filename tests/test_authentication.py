from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import anyio
import pytest

from identity_service.authentication import Authenticator
from identity_service.database import RecordStore
from identity_service.errors import DirectoryUnavailableError, InvalidCredentialsError, StoreUnavailableError
from identity_service.hashing import CredentialHasher
from identity_service.models import UserOrigin

from conftest import InMemoryDirectory


@pytest.fixture()
def authenticator(store: RecordStore, directory: InMemoryDirectory) -> Authenticator:
    return Authenticator(store, directory)


@pytest.fixture()
def alice(store: RecordStore, directory: InMemoryDirectory, hasher: CredentialHasher):
    record = store.insert_draft_user("alice", "Alice A")
    directory.add(
        directory.user_dn("alice"),
        {"uid": "alice", "mail": "alice@example.com", "userPassword": hasher.hash("s3cret1")},
    )
    return record


def _login(authenticator: Authenticator, identifier: str, password: str):
    async def run():
        return await authenticator.login(identifier, password)

    return anyio.run(run)


def test_login_succeeds_and_records_last_login(authenticator: Authenticator, store: RecordStore, alice) -> None:
    before = datetime.now(timezone.utc)

    user = _login(authenticator, "alice", "s3cret1")

    assert user.user_id == alice.user_id
    refreshed = store.find_user_by_identifier("alice")
    assert refreshed.last_login_at >= before


def test_wrong_password_and_unknown_user_are_indistinguishable(authenticator: Authenticator, alice) -> None:
    with pytest.raises(InvalidCredentialsError) as wrong_password:
        _login(authenticator, "alice", "wrong")
    with pytest.raises(InvalidCredentialsError) as unknown_user:
        _login(authenticator, "mallory", "s3cret1")

    assert wrong_password.value.kind == unknown_user.value.kind == "invalid_credentials"
    assert str(wrong_password.value) == str(unknown_user.value) == "Invalid credentials"


def test_empty_password_never_binds(authenticator: Authenticator, directory: InMemoryDirectory, alice) -> None:
    with pytest.raises(InvalidCredentialsError):
        _login(authenticator, "alice", "")

    assert not any(operation == "bind" for operation, _ in directory.calls)


def test_record_without_directory_entry_is_rejected(authenticator: Authenticator, store: RecordStore) -> None:
    store.insert_draft_user("ghost", None)

    with pytest.raises(InvalidCredentialsError):
        _login(authenticator, "ghost", "whatever")


def test_directory_outage_collapses_to_invalid_credentials(
    authenticator: Authenticator,
    directory: InMemoryDirectory,
    alice,
    caplog,
) -> None:
    directory.fail("bind", DirectoryUnavailableError("Directory unavailable during bind: refused"))

    with caplog.at_level("WARNING", logger="identity.authentication"):
        with pytest.raises(InvalidCredentialsError):
            _login(authenticator, "alice", "s3cret1")

    assert "Directory unavailable" in caplog.text


def test_last_login_failure_does_not_fail_login(
    authenticator: Authenticator,
    store: RecordStore,
    alice,
    monkeypatch,
) -> None:
    def broken_update(user, when=None):
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(store, "update_last_login", broken_update)

    assert _login(authenticator, "alice", "s3cret1").identifier == "alice"


def test_legacy_table_users_can_log_in(
    authenticator: Authenticator,
    store: RecordStore,
    directory: InMemoryDirectory,
    hasher: CredentialHasher,
) -> None:
    conn = sqlite3.connect(store.settings.path)
    with conn:
        conn.execute(
            "INSERT INTO legacy_users (ldap_uid_id, created_at) VALUES ('bob', '2020-01-01T00:00:00+00:00')"
        )
    conn.close()
    directory.add(directory.user_dn("bob"), {"uid": "bob", "userPassword": hasher.hash("hunter22")})

    user = _login(authenticator, "bob", "hunter22")

    assert user.origin is UserOrigin.FALLBACK
    assert store.find_user_by_identifier("bob").last_login_at is not None
