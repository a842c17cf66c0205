"""LDAP directory access for identity provisioning and credential checks."""
from __future__ import annotations

import logging
import re
import ssl
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Generator, Iterable, List, Mapping, Optional, Sequence, Tuple

import ldap3
from ldap3.core.exceptions import LDAPCommunicationError, LDAPException
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from .config import DirectorySettings
from .errors import DirectoryUnavailableError

logger = logging.getLogger("identity.directory")

# LDAP result codes the gateway interprets.
RESULT_SUCCESS = 0
RESULT_NO_SUCH_ATTRIBUTE = 16
RESULT_NO_SUCH_OBJECT = 32
RESULT_INVALID_CREDENTIALS = 49
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_ENTRY_ALREADY_EXISTS = 68

_ALREADY_PRESENT = re.compile(r"exists|already", re.IGNORECASE)

USER_ATTRIBUTES = ("uid", "sn", "givenName", "cn", "displayName", "mail")


class DirectoryError(RuntimeError):
    """Raised when a directory operation fails."""


class DirectoryConfigurationError(DirectoryError):
    """Raised when the gateway lacks the configuration an operation needs."""


class DirectoryBindError(DirectoryError):
    """Raised when the directory rejects a bind."""


class DirectoryOperationError(DirectoryError):
    """Raised when the directory answers an operation with a failure result."""

    def __init__(self, message: str, *, result_code: Optional[int] = None, description: str = "") -> None:
        super().__init__(message)
        self.result_code = result_code
        self.description = description

    @property
    def already_present(self) -> bool:
        if self.result_code in {RESULT_ATTRIBUTE_OR_VALUE_EXISTS, RESULT_ENTRY_ALREADY_EXISTS}:
            return True
        return bool(_ALREADY_PRESENT.search(self.description or str(self)))

    @property
    def value_missing(self) -> bool:
        return self.result_code == RESULT_NO_SUCH_ATTRIBUTE


class SearchScope(str, Enum):
    BASE = "base"
    ONE = "one"
    SUB = "sub"


class ChangeOp(str, Enum):
    """Modification applied to a single attribute."""

    ADD = "add"
    REPLACE = "replace"
    DELETE = "delete"


_LDAP3_SCOPES = {
    SearchScope.BASE: ldap3.BASE,
    SearchScope.ONE: ldap3.LEVEL,
    SearchScope.SUB: ldap3.SUBTREE,
}

_LDAP3_CHANGES = {
    ChangeOp.ADD: ldap3.MODIFY_ADD,
    ChangeOp.REPLACE: ldap3.MODIFY_REPLACE,
    ChangeOp.DELETE: ldap3.MODIFY_DELETE,
}

Changes = Mapping[str, Tuple[ChangeOp, Sequence[str]]]


def _to_text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def normalize_attribute(value: object) -> Tuple[str, ...]:
    """Collapse a raw attribute value (string, bytes, or a list of either) into text values."""

    if value is None:
        return ()
    if isinstance(value, (list, tuple, set, frozenset)):
        values: List[str] = []
        for item in value:
            text = _to_text(item)
            if text is not None:
                values.append(text)
        return tuple(values)
    text = _to_text(value)
    return (text,) if text is not None else ()


@dataclass(frozen=True)
class DirectoryEntry:
    """A search result with attribute names folded to lower case."""

    dn: str
    attributes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, dn: str, raw: Mapping[str, object]) -> "DirectoryEntry":
        attributes: Dict[str, Tuple[str, ...]] = {}
        for name, value in raw.items():
            key = str(name).lower()
            attributes[key] = attributes.get(key, ()) + normalize_attribute(value)
        return cls(dn=dn, attributes=attributes)

    def values(self, name: str) -> Tuple[str, ...]:
        return self.attributes.get(name.lower(), ())

    def first(self, name: str) -> Optional[str]:
        values = self.values(name)
        return values[0] if values else None

    def has_value(self, name: str, value: str) -> bool:
        expected = value.lower()
        return any(item.lower() == expected for item in self.values(name))


class DirectoryGateway:
    """Stateless wrapper around directory bind, search, add and modify.

    Every public operation opens its own connection, does one unit of work and
    releases the connection before returning or raising.
    """

    def __init__(self, settings: DirectorySettings) -> None:
        self._settings = settings
        self._server = self._build_server(settings)

    @property
    def settings(self) -> DirectorySettings:
        return self._settings

    # ------------------------------------------------------------------
    # DN helpers
    # ------------------------------------------------------------------
    def user_dn(self, uid: str) -> str:
        return f"uid={escape_rdn(uid)},{self._settings.users_base_dn}"

    def group_dn(self, cn: str) -> str:
        return f"cn={escape_rdn(cn)},{self._settings.groups_base_dn}"

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------
    def bind(self, dn: str, secret: str) -> None:
        """Authenticate as ``dn``. Raises :class:`DirectoryBindError` on rejection."""

        if not dn or not secret:
            # An empty secret would turn into an unauthenticated bind that always succeeds.
            raise DirectoryBindError("A distinguished name and password are required to bind")
        with self._session(dn, secret):
            return None

    def bind_as_service(self) -> None:
        with self._service_session():
            return None

    def search(
        self,
        base_dn: str,
        search_filter: str,
        attributes: Iterable[str],
        scope: SearchScope = SearchScope.SUB,
    ) -> List[DirectoryEntry]:
        requested = list(attributes)
        with self._service_session() as connection:
            ok = self._call(
                f"search {base_dn}",
                connection.search,
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=_LDAP3_SCOPES[scope],
                attributes=requested or ldap3.NO_ATTRIBUTES,
            )
            if not ok:
                if (connection.result or {}).get("result") == RESULT_NO_SUCH_OBJECT:
                    return []
                raise self._result_error(f"Search under {base_dn} failed", connection)
            return [
                DirectoryEntry.from_raw(item["dn"], item.get("attributes") or {})
                for item in connection.response or []
                if item.get("type") == "searchResEntry"
            ]

    def add(self, dn: str, attributes: Mapping[str, object]) -> None:
        payload = {name: value for name, value in attributes.items() if name.lower() != "objectclass"}
        object_classes = list(normalize_attribute(attributes.get("objectClass")))
        with self._service_session() as connection:
            ok = self._call(
                f"add {dn}",
                connection.add,
                dn,
                object_class=object_classes or None,
                attributes=payload,
            )
            if not ok:
                raise self._result_error(f"Failed to add directory entry {dn}", connection)

    def modify(self, dn: str, changes: Changes) -> None:
        payload = {
            name: [(_LDAP3_CHANGES[ChangeOp(operation)], list(values))]
            for name, (operation, values) in changes.items()
        }
        if not payload:
            return
        with self._service_session() as connection:
            ok = self._call(f"modify {dn}", connection.modify, dn, payload)
            if not ok:
                raise self._result_error(f"Failed to modify directory entry {dn}", connection)

    # ------------------------------------------------------------------
    # Composite lookups built on the primitives
    # ------------------------------------------------------------------
    def find_user_by_uid(self, uid: str) -> Optional[DirectoryEntry]:
        return self._find_user("uid", uid)

    def find_user_by_mail(self, mail: str) -> Optional[DirectoryEntry]:
        return self._find_user("mail", mail)

    def find_users_by_reset_token(self, token: str) -> List[DirectoryEntry]:
        return self.search(
            self._settings.users_base_dn,
            f"(resetToken={escape_filter_chars(token)})",
            ["uid", "resetTokenExpiry"],
        )

    def add_group_member(self, group_cn: str, member_dn: str) -> bool:
        """Add ``member_dn`` to a group. Returns ``False`` when it was already a member."""

        try:
            self.modify(self.group_dn(group_cn), {"member": (ChangeOp.ADD, [member_dn])})
        except DirectoryOperationError as exc:
            if not exc.already_present:
                raise
            logger.debug("%s is already a member of %s", member_dn, group_cn)
            return False
        return True

    def _find_user(self, attribute: str, value: str) -> Optional[DirectoryEntry]:
        entries = self.search(
            self._settings.users_base_dn,
            f"({attribute}={escape_filter_chars(value)})",
            USER_ATTRIBUTES,
        )
        if len(entries) > 1:
            logger.warning("Directory returned %d entries for %s lookup", len(entries), attribute)
        return entries[0] if entries else None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    @staticmethod
    def _build_server(settings: DirectorySettings) -> ldap3.Server:
        tls = ldap3.Tls(validate=ssl.CERT_REQUIRED if settings.verify_certificates else ssl.CERT_NONE)
        return ldap3.Server(
            settings.url,
            tls=tls,
            get_info=ldap3.NONE,
            connect_timeout=settings.connect_timeout,
        )

    @contextmanager
    def _service_session(self) -> Generator[ldap3.Connection, None, None]:
        if not self._settings.has_service_credentials:
            raise DirectoryConfigurationError("Directory bind credentials are not configured")
        with self._session(self._settings.bind_dn or "", self._settings.bind_password or "") as connection:
            yield connection

    @contextmanager
    def _session(self, dn: str, secret: str) -> Generator[ldap3.Connection, None, None]:
        connection = ldap3.Connection(
            self._server,
            user=dn,
            password=secret,
            auto_bind=ldap3.AUTO_BIND_NONE,
            raise_exceptions=False,
            receive_timeout=self._settings.operation_timeout,
        )
        try:
            bound = self._call(f"bind as {dn}", connection.bind)
            if not bound:
                result = connection.result or {}
                raise DirectoryBindError(
                    f"Bind as {dn} was rejected: {result.get('description') or 'unknown error'}"
                )
            yield connection
        finally:
            with suppress(LDAPException):
                connection.unbind()

    @staticmethod
    def _call(action: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LDAPCommunicationError as exc:
            raise DirectoryUnavailableError(f"Directory unavailable during {action}: {exc}") from exc
        except LDAPException as exc:
            raise DirectoryOperationError(f"Directory {action} failed: {exc}", description=str(exc)) from exc

    @staticmethod
    def _result_error(message: str, connection: ldap3.Connection) -> DirectoryOperationError:
        result = connection.result or {}
        description = str(result.get("description") or "")
        detail = str(result.get("message") or "")
        text = f"{message}: {description} {detail}".strip()
        return DirectoryOperationError(text, result_code=result.get("result"), description=f"{description} {detail}")


__all__ = [
    "ChangeOp",
    "DirectoryBindError",
    "DirectoryConfigurationError",
    "DirectoryEntry",
    "DirectoryError",
    "DirectoryGateway",
    "DirectoryOperationError",
    "SearchScope",
    "USER_ATTRIBUTES",
    "normalize_attribute",
]
