"""Registration workflow spanning the relational store and the directory."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import anyio

from .database import DuplicateIdentifierError, RecordStore
from .directory import DirectoryError, DirectoryGateway
from .errors import (
    ConflictError,
    DirectoryUnavailableError,
    IdentityError,
    ProvisioningError,
    StoreUnavailableError,
    Violation,
)
from .hashing import CredentialHasher
from .models import UserRecord

logger = logging.getLogger("identity.registration")

USERNAME_TAKEN = Violation(field="username", message="Username already exists")
EMAIL_TAKEN = Violation(field="email", message="Email already registered")


@dataclass(frozen=True)
class RegistrationRequest:
    first_name: str
    last_name: str
    display_name: str
    username: str
    email: str
    password: str

    def normalized(self) -> "RegistrationRequest":
        return RegistrationRequest(
            first_name=self.first_name.strip(),
            last_name=self.last_name.strip(),
            display_name=self.display_name.strip(),
            username=self.username.strip(),
            email=self.email.strip(),
            password=self.password,
        )


def derive_directory_attributes(
    request: RegistrationRequest,
    credential_hash: str,
    object_classes: List[str],
) -> Dict[str, object]:
    """Build the attribute set for a new directory entry.

    Blank name parts fall back to whatever was supplied, ending with the username.
    """

    first = request.first_name.strip()
    last = request.last_name.strip()
    display = request.display_name.strip()
    username = request.username

    surname = last or first or username
    given_name = first or username
    common_name = f"{given_name} {last}".strip() or given_name or username
    return {
        "uid": username,
        "sn": surname,
        "givenName": given_name,
        "cn": common_name,
        "displayName": display or common_name,
        "mail": request.email.lower(),
        "userPassword": credential_hash,
        "objectClass": list(object_classes),
    }


class IdentityRegistrar:
    """Creates a user in both stores, undoing the relational draft if the directory fails."""

    def __init__(
        self,
        store: RecordStore,
        directory: DirectoryGateway,
        hasher: CredentialHasher,
    ) -> None:
        self._store = store
        self._directory = directory
        self._hasher = hasher

    async def register(
        self,
        *,
        first_name: str,
        last_name: str,
        display_name: str,
        username: str,
        email: str,
        password: str,
    ) -> UserRecord:
        request = RegistrationRequest(
            first_name=first_name,
            last_name=last_name,
            display_name=display_name,
            username=username,
            email=email,
            password=password,
        ).normalized()

        violations = await self.find_conflicts(request.username, request.email)
        if violations:
            raise ConflictError(violations)

        try:
            record = await anyio.to_thread.run_sync(
                self._store.insert_draft_user, request.username, request.display_name or None
            )
        except DuplicateIdentifierError as exc:
            # Lost a race with a concurrent registration for the same username.
            raise ConflictError([USERNAME_TAKEN]) from exc

        try:
            await self._provision_directory(request)
        except (DirectoryError, DirectoryUnavailableError, ValueError) as exc:
            logger.warning(
                "Directory provisioning for %s failed, removing draft user %s: %s",
                request.username,
                record.user_id,
                exc,
            )
            compensated = await self._compensate(record)
            raise ProvisioningError(
                "Unable to create the account. Please try again later.",
                compensated=compensated,
            ) from exc

        logger.info("Registered %s as user %s", request.username, record.user_id)
        return record

    async def find_conflicts(self, username: str, email: str) -> List[Violation]:
        """Check username and email uniqueness concurrently, reporting every conflict."""

        results: Dict[str, bool] = {}
        failures: List[Exception] = []

        async def check(name: str, func: Callable[[str], bool], value: str) -> None:
            try:
                results[name] = await anyio.to_thread.run_sync(func, value)
            except (DirectoryError, IdentityError) as exc:
                failures.append(exc)

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(check, "username", self._username_taken, username)
            task_group.start_soon(check, "email", self._email_taken, email)

        if failures:
            failure = failures[0]
            if isinstance(failure, DirectoryError):
                raise DirectoryUnavailableError(f"Directory lookup failed: {failure}") from failure
            raise failure

        violations: List[Violation] = []
        if results.get("username"):
            violations.append(USERNAME_TAKEN)
        if results.get("email"):
            violations.append(EMAIL_TAKEN)
        return violations

    def _username_taken(self, username: str) -> bool:
        if not username:
            return False
        if self._store.find_user_by_identifier(username) is not None:
            return True
        return self._directory.find_user_by_uid(username) is not None

    def _email_taken(self, email: str) -> bool:
        if not email:
            return False
        return self._directory.find_user_by_mail(email) is not None

    async def _provision_directory(self, request: RegistrationRequest) -> None:
        credential_hash = await anyio.to_thread.run_sync(self._hasher.hash, request.password)
        settings = self._directory.settings
        attributes = derive_directory_attributes(
            request, credential_hash, list(settings.user_object_classes)
        )
        member_dn = self._directory.user_dn(request.username)

        await anyio.to_thread.run_sync(self._directory.add, member_dn, attributes)
        try:
            await anyio.to_thread.run_sync(
                self._directory.add_group_member, settings.default_group_cn, member_dn
            )
        except (DirectoryError, DirectoryUnavailableError):
            logger.error(
                "Directory entry %s was created but could not be linked to %s; "
                "the entry remains as a residual directory entry",
                member_dn,
                settings.default_group_cn,
            )
            raise

    async def _compensate(self, record: UserRecord) -> bool:
        """Delete the draft row, retrying once. Returns ``False`` if the row is orphaned."""

        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                await anyio.to_thread.run_sync(self._store.delete_user, record.user_id)
            except StoreUnavailableError as exc:
                last_error = exc
                logger.warning(
                    "Compensation attempt %d for draft user %s failed: %s",
                    attempt,
                    record.user_id,
                    exc,
                )
                continue
            logger.info("Removed draft user %s after failed provisioning", record.user_id)
            return True

        logger.error(
            "Compensation failed; orphaned relational row user_id=%s identifier=%s has no directory entry: %s",
            record.user_id,
            record.identifier,
            last_error,
        )
        return False


__all__ = [
    "EMAIL_TAKEN",
    "IdentityRegistrar",
    "RegistrationRequest",
    "USERNAME_TAKEN",
    "derive_directory_attributes",
]
