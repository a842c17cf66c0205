"""Login verification against the directory."""
from __future__ import annotations

import logging

import anyio

from .database import RecordStore
from .directory import DirectoryBindError, DirectoryError, DirectoryGateway
from .errors import DirectoryUnavailableError, InvalidCredentialsError, StoreUnavailableError
from .models import UserRecord

logger = logging.getLogger("identity.authentication")


class Authenticator:
    """Resolves a username to a known record and binds to the directory as that user.

    Every failure after resolution reports the same :class:`InvalidCredentialsError`
    so callers cannot tell a missing account from a wrong password.
    """

    def __init__(self, store: RecordStore, directory: DirectoryGateway) -> None:
        self._store = store
        self._directory = directory

    async def login(self, identifier: str, password: str) -> UserRecord:
        if not identifier.strip() or not password:
            raise InvalidCredentialsError()

        user = await anyio.to_thread.run_sync(self._store.find_user_by_identifier, identifier)
        if user is None:
            logger.info("Login rejected for unknown identifier")
            raise InvalidCredentialsError()

        dn = self._directory.user_dn(user.identifier)
        try:
            await anyio.to_thread.run_sync(self._directory.bind, dn, password)
        except DirectoryBindError as exc:
            logger.info("Login rejected for %s: %s", user.identifier, exc)
            raise InvalidCredentialsError() from exc
        except DirectoryUnavailableError as exc:
            logger.warning("Directory unavailable while authenticating %s: %s", user.identifier, exc)
            raise InvalidCredentialsError() from exc
        except DirectoryError as exc:
            logger.warning("Directory error while authenticating %s: %s", user.identifier, exc)
            raise InvalidCredentialsError() from exc

        try:
            await anyio.to_thread.run_sync(self._store.update_last_login, user)
        except StoreUnavailableError as exc:
            logger.warning("Could not record last login for user %s: %s", user.user_id, exc)

        logger.info("User %s logged in", user.identifier)
        return user


__all__ = ["Authenticator"]
