"""Forgot-password and reset-password workflows."""
from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Tuple

import anyio

from .database import RecordStore
from .directory import (
    ChangeOp,
    DirectoryEntry,
    DirectoryError,
    DirectoryGateway,
    DirectoryOperationError,
)
from .errors import (
    DirectoryUnavailableError,
    InvalidTokenError,
    StoreUnavailableError,
    ValidationError,
)
from .hashing import CredentialHasher
from .models import ResetLedgerRow, ResetRequestOutcome, UserRecord
from .notifications import NotificationError, Notifier, build_reset_url

logger = logging.getLogger("identity.password_reset")

DEFAULT_TOKEN_TTL = timedelta(hours=1)
TOKEN_BYTES = 32
_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{%d}$" % (TOKEN_BYTES * 2))
_HAS_OFFSET = re.compile(r"(?:[zZ]|[+-]\d{2}:?\d{2})$")

RESET_TOKEN_ATTRIBUTE = "resetToken"
RESET_EXPIRY_ATTRIBUTE = "resetTokenExpiry"
PASSWORD_ATTRIBUTE = "userPassword"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_reset_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def format_expiry(value: datetime) -> str:
    """Serialize an expiry as ``YYYY-MM-DD HH:MM:SS`` in UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    """Parse a stored expiry, treating values without an offset as UTC."""

    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    if "T" not in text:
        text = text.replace(" ", "T", 1)
    if text.endswith(("z", "Z")):
        text = text[:-1] + "+00:00"
    elif _HAS_OFFSET.search(text) and ":" not in text[-5:]:
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_well_formed_token(token: str) -> bool:
    return bool(_TOKEN_PATTERN.fullmatch(token))


def _same_issuance(recorded: datetime, presented: datetime) -> bool:
    """Whether a ledger expiry and a directory expiry describe the same token."""

    return recorded.replace(microsecond=0) == presented.replace(microsecond=0)


class ResetTokenManager:
    """Issues single-use reset tokens and rotates credentials when they are redeemed.

    A token moves from issued to consumed, or to expired when checked after its
    expiry. Expiry is only evaluated when a token is presented.
    """

    def __init__(
        self,
        store: RecordStore,
        directory: DirectoryGateway,
        hasher: CredentialHasher,
        notifier: Notifier,
        *,
        reset_base_url: Optional[str] = None,
        client_origins: Sequence[str] = (),
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._directory = directory
        self._hasher = hasher
        self._notifier = notifier
        self._reset_base_url = reset_base_url
        self._client_origins = tuple(client_origins)
        self._token_ttl = token_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Forgot password
    # ------------------------------------------------------------------
    async def request_reset(self, email: str) -> ResetRequestOutcome:
        """Issue a token for ``email`` if it belongs to an account.

        The outcome is for internal diagnostics only; callers must answer the same
        way whether or not the address matched.
        """

        address = email.strip()
        if not address:
            return ResetRequestOutcome(matched=False)

        entry = await self._run_directory(self._directory.find_user_by_mail, address)
        if entry is None:
            logger.info("Password reset requested for an address with no account")
            return ResetRequestOutcome(matched=False)

        token = generate_reset_token()
        expires_at = self._clock() + self._token_ttl
        try:
            await anyio.to_thread.run_sync(
                self._directory.modify,
                entry.dn,
                {
                    RESET_TOKEN_ATTRIBUTE: (ChangeOp.REPLACE, [token]),
                    RESET_EXPIRY_ATTRIBUTE: (ChangeOp.REPLACE, [format_expiry(expires_at)]),
                },
            )
        except (DirectoryError, DirectoryUnavailableError) as exc:
            # Answer as for an unknown address so an outage does not reveal the account.
            logger.error("Could not store a reset token for %s: %s", entry.dn, exc)
            return ResetRequestOutcome(matched=True)

        await self._record_issued(entry, expires_at)

        reset_url = build_reset_url(token, self._reset_base_url, self._client_origins)
        try:
            await anyio.to_thread.run_sync(self._notifier.send_password_reset, address, reset_url)
        except NotificationError as exc:
            logger.error("Password reset notification for %s failed: %s", entry.dn, exc)
            return ResetRequestOutcome(
                matched=True,
                notified=False,
                reset_url=reset_url,
                notification_error=str(exc),
            )

        logger.info("Password reset issued for %s", entry.dn)
        return ResetRequestOutcome(matched=True, notified=True, reset_url=reset_url)

    async def _record_issued(self, entry: DirectoryEntry, expires_at: datetime) -> None:
        uid = entry.first("uid")
        if not uid:
            logger.warning("Directory entry %s has no uid; reset ledger not updated", entry.dn)
            return
        try:
            user = await anyio.to_thread.run_sync(self._store.find_user_by_identifier, uid)
            if user is None:
                logger.warning("No relational record for %s; reset ledger not updated", uid)
                return
            await anyio.to_thread.run_sync(self._store.upsert_reset_ledger, user, expires_at)
        except StoreUnavailableError as exc:
            logger.error("Reset ledger write for %s failed: %s", uid, exc)

    # ------------------------------------------------------------------
    # Reset password
    # ------------------------------------------------------------------
    async def consume_reset(self, token: str, new_password: str) -> UserRecord | None:
        """Redeem ``token`` and replace the account password.

        Returns the relational record of the account when one exists.
        """

        candidate = token.strip()
        if not is_well_formed_token(candidate):
            raise InvalidTokenError()
        if not new_password:
            raise ValidationError(["Password is required"])

        entries = await self._run_directory(self._directory.find_users_by_reset_token, candidate)
        if len(entries) != 1:
            if len(entries) > 1:
                logger.error("Reset token matched %d directory entries; refusing it", len(entries))
            raise InvalidTokenError()

        entry = entries[0]
        now = self._clock()
        expires_at = parse_expiry(entry.first(RESET_EXPIRY_ATTRIBUTE))
        if expires_at is None or expires_at <= now:
            logger.info("Expired or unreadable reset token presented for %s", entry.dn)
            raise InvalidTokenError()

        uid = entry.first("uid")
        user, ledger = await self._load_ledger(uid)
        if ledger is not None and _same_issuance(ledger.expires_at, expires_at) and not ledger.is_usable(now):
            logger.info("Reset ledger marks the token for %s as used or expired", uid)
            raise InvalidTokenError()

        credential_hash = await anyio.to_thread.run_sync(self._hasher.hash, new_password)
        try:
            # Deleting the presented value makes the whole modify fail if the token changed.
            await anyio.to_thread.run_sync(
                self._directory.modify,
                entry.dn,
                {
                    PASSWORD_ATTRIBUTE: (ChangeOp.REPLACE, [credential_hash]),
                    RESET_TOKEN_ATTRIBUTE: (ChangeOp.DELETE, [candidate]),
                    RESET_EXPIRY_ATTRIBUTE: (ChangeOp.DELETE, []),
                },
            )
        except DirectoryOperationError as exc:
            if not exc.value_missing:
                raise DirectoryUnavailableError(f"Directory request failed: {exc}") from exc
            logger.info("Reset token for %s was replaced or redeemed concurrently", entry.dn)
            raise InvalidTokenError() from exc
        except DirectoryError as exc:
            raise DirectoryUnavailableError(f"Directory request failed: {exc}") from exc
        logger.info("Password reset completed for %s", entry.dn)

        if user is not None:
            try:
                await anyio.to_thread.run_sync(self._store.mark_reset_consumed, user)
            except StoreUnavailableError as exc:
                logger.warning("Could not mark reset ledger consumed for %s: %s", uid, exc)
        return user

    async def _load_ledger(self, uid: Optional[str]) -> Tuple[Optional[UserRecord], Optional[ResetLedgerRow]]:
        if not uid:
            return None, None
        try:
            user = await anyio.to_thread.run_sync(self._store.find_user_by_identifier, uid)
            if user is None:
                return None, None
            ledger = await anyio.to_thread.run_sync(self._store.get_reset_ledger, user)
        except StoreUnavailableError as exc:
            logger.warning("Reset ledger unavailable for %s, deciding from the directory: %s", uid, exc)
            return None, None
        return user, ledger

    async def _run_directory(self, func, *args):
        try:
            return await anyio.to_thread.run_sync(func, *args)
        except DirectoryError as exc:
            raise DirectoryUnavailableError(f"Directory request failed: {exc}") from exc


__all__ = [
    "ResetTokenManager",
    "format_expiry",
    "generate_reset_token",
    "is_well_formed_token",
    "parse_expiry",
]
