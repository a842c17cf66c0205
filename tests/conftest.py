from __future__ import annotations

import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identity_service.config import DatabaseSettings, DirectorySettings, Settings
from identity_service.database import RecordStore
from identity_service.directory import (
    ChangeOp,
    Changes,
    DirectoryBindError,
    DirectoryConfigurationError,
    DirectoryEntry,
    DirectoryGateway,
    DirectoryOperationError,
    SearchScope,
    normalize_attribute,
)
from identity_service.hashing import CredentialHasher, HashingScheme

SERVICE_DN = "cn=admin,dc=example,dc=org"
SERVICE_PASSWORD = "admin-secret"

# Cheap argon2 parameters so the suite stays fast.
TEST_SCHEME = HashingScheme(memory_cost=1024, time_cost=1, parallelism=1)

_SIMPLE_FILTER = re.compile(r"^\((?P<attr>[A-Za-z][\w-]*)=(?P<value>.*)\)$")
_ESCAPED = re.compile(r"\\([0-9a-fA-F]{2})")


class InMemoryDirectory(DirectoryGateway):
    """Directory double that keeps entries in a dict and checks binds with real hashes."""

    def __init__(self, settings: DirectorySettings, hasher: CredentialHasher) -> None:
        super().__init__(settings)
        self.hasher = hasher
        self.entries: Dict[str, Dict[str, List[str]]] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str]] = []
        self.entries[self.group_dn(settings.default_group_cn)] = {
            "cn": [settings.default_group_cn],
            "objectclass": ["groupOfNames"],
            "member": [],
        }

    # Test helpers -----------------------------------------------------
    def fail(self, operation: str, error: Exception) -> None:
        self.failures[operation] = error

    def _check(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def entry(self, dn: str) -> Dict[str, List[str]]:
        return self.entries[dn]

    def members(self, group_cn: Optional[str] = None) -> List[str]:
        group = self.group_dn(group_cn or self.settings.default_group_cn)
        return list(self.entries[group].get("member", []))

    # Primitives -------------------------------------------------------
    def bind(self, dn: str, secret: str) -> None:
        self._check("bind", dn)
        if not dn or not secret:
            raise DirectoryBindError("A distinguished name and password are required to bind")
        if dn == self.settings.bind_dn and secret == self.settings.bind_password:
            return None
        entry = self.entries.get(dn)
        stored = (entry or {}).get("userpassword", [""])[0]
        if entry is None or not self.hasher.verify(secret, stored):
            raise DirectoryBindError(f"Bind as {dn} was rejected: invalidCredentials")
        return None

    def bind_as_service(self) -> None:
        self._check("bind_as_service", self.settings.bind_dn or "")
        if not self.settings.has_service_credentials:
            raise DirectoryConfigurationError("Directory bind credentials are not configured")

    def search(
        self,
        base_dn: str,
        search_filter: str,
        attributes: Iterable[str],
        scope: SearchScope = SearchScope.SUB,
    ) -> List[DirectoryEntry]:
        self._check("search", search_filter)
        match = _SIMPLE_FILTER.match(search_filter)
        assert match is not None, f"unsupported filter {search_filter}"
        attribute = match.group("attr").lower()
        value = _ESCAPED.sub(lambda m: chr(int(m.group(1), 16)), match.group("value")).lower()
        requested = [name.lower() for name in attributes]

        results = []
        for dn, stored in self.entries.items():
            if not dn.lower().endswith(base_dn.lower()):
                continue
            if not any(item.lower() == value for item in stored.get(attribute, [])):
                continue
            raw = {name: stored[name] for name in requested if name in stored}
            results.append(DirectoryEntry.from_raw(dn, raw))
        return results

    def add(self, dn: str, attributes: Mapping[str, object]) -> None:
        self._check("add", dn)
        if dn in self.entries:
            raise DirectoryOperationError(
                f"Failed to add directory entry {dn}: entryAlreadyExists",
                result_code=68,
                description="entryAlreadyExists",
            )
        self.entries[dn] = {name.lower(): list(normalize_attribute(value)) for name, value in attributes.items()}

    def modify(self, dn: str, changes: Changes) -> None:
        self._check("modify", dn)
        stored = self.entries.get(dn)
        if stored is None:
            raise DirectoryOperationError(
                f"Failed to modify directory entry {dn}: noSuchObject",
                result_code=32,
                description="noSuchObject",
            )
        # Changes apply to a copy so a failing change leaves the entry untouched.
        entry = {key: list(values) for key, values in stored.items()}
        for name, (operation, values) in changes.items():
            key = name.lower()
            operation = ChangeOp(operation)
            if operation is ChangeOp.ADD:
                current = entry.setdefault(key, [])
                if any(value in current for value in values):
                    raise DirectoryOperationError(
                        f"Failed to modify directory entry {dn}: attributeOrValueExists",
                        result_code=20,
                        description="attributeOrValueExists",
                    )
                current.extend(values)
            elif operation is ChangeOp.REPLACE:
                entry[key] = list(values)
            else:
                current = entry.get(key, [])
                if not current or any(value not in current for value in values):
                    raise DirectoryOperationError(
                        f"Failed to modify directory entry {dn}: noSuchAttribute",
                        result_code=16,
                        description="noSuchAttribute",
                    )
                remaining = [value for value in current if value not in values] if values else []
                if remaining:
                    entry[key] = remaining
                else:
                    entry.pop(key, None)
        stored.clear()
        stored.update(entry)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.error: Optional[Exception] = None

    def send_password_reset(self, to: str, reset_url: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((to, reset_url))


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def directory_settings() -> DirectorySettings:
    return DirectorySettings(
        url="ldap://directory.test:389",
        bind_dn=SERVICE_DN,
        bind_password=SERVICE_PASSWORD,
        users_base_dn="ou=users,dc=example,dc=org",
        groups_base_dn="ou=groups,dc=example,dc=org",
    )


@pytest.fixture()
def settings(tmp_path: Path, directory_settings: DirectorySettings) -> Settings:
    return Settings(
        directory=directory_settings,
        database=DatabaseSettings(path=tmp_path / "identity.sqlite3", fallback_user_table="legacy_users"),
        hashing=TEST_SCHEME,
        client_origins=("http://localhost:3000",),
        health_check_interval=None,
    )


@pytest.fixture()
def hasher() -> CredentialHasher:
    return CredentialHasher(TEST_SCHEME)


@pytest.fixture()
def store(settings: Settings) -> RecordStore:
    record_store = RecordStore(settings.database)
    record_store.initialize()
    return record_store


@pytest.fixture()
def directory(directory_settings: DirectorySettings, hasher: CredentialHasher) -> InMemoryDirectory:
    return InMemoryDirectory(directory_settings, hasher)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))
