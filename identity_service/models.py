"""Domain models for the identity coordinator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class UserOrigin(str, Enum):
    """Relational table a user record was loaded from."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class UserRecord:
    """Represents a user row stored in the relational database."""

    user_id: int
    identifier: str
    display_name: Optional[str]
    last_login_at: Optional[datetime]
    origin: UserOrigin = UserOrigin.PRIMARY


@dataclass(frozen=True)
class ResetLedgerRow:
    """Most recent password reset attempt recorded for a user."""

    user_id: int
    origin: UserOrigin
    token_outstanding: bool
    expires_at: datetime
    used: bool

    def is_usable(self, now: datetime) -> bool:
        return self.token_outstanding and not self.used and self.expires_at > now


@dataclass(frozen=True)
class ResetRequestOutcome:
    """Internal diagnostics for a forgot-password request.

    The HTTP layer never reveals ``matched`` or ``notified`` to the caller.
    """

    matched: bool
    notified: bool = False
    reset_url: Optional[str] = None
    notification_error: Optional[str] = None


__all__ = ["ResetLedgerRow", "ResetRequestOutcome", "UserOrigin", "UserRecord"]
