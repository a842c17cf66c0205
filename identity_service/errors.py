"""Error taxonomy shared by the identity workflows and the HTTP layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple


class IdentityError(RuntimeError):
    """Base class for failures reported to callers of the identity workflows."""

    kind = "identity_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def messages(self) -> List[str]:
        return [self.message]


class ValidationError(IdentityError):
    """Raised when caller supplied data is malformed."""

    kind = "validation_error"
    status_code = 400

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: Tuple[str, ...] = tuple(errors)
        super().__init__(self.errors[0] if self.errors else "Invalid request")

    def messages(self) -> List[str]:
        return list(self.errors)


@dataclass(frozen=True)
class Violation:
    """A single uniqueness constraint that a registration would break."""

    field: str
    message: str


class ConflictError(IdentityError):
    """Raised when a username or email address is already in use."""

    kind = "conflict"
    status_code = 409

    def __init__(self, violations: Iterable[Violation]) -> None:
        self.violations: Tuple[Violation, ...] = tuple(violations)
        summary = "; ".join(violation.message for violation in self.violations)
        super().__init__(summary or "Account already exists")

    def messages(self) -> List[str]:
        return [violation.message for violation in self.violations]


class ProvisioningError(IdentityError):
    """Raised when a directory step fails after the relational draft was written."""

    kind = "provisioning_failed"
    status_code = 502

    def __init__(self, message: str, *, compensated: bool = True) -> None:
        super().__init__(message)
        self.compensated = compensated


class InvalidCredentialsError(IdentityError):
    """Login failed. Never says whether the user exists."""

    kind = "invalid_credentials"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class InvalidTokenError(IdentityError):
    """A reset token is unknown, malformed, expired or already used."""

    kind = "invalid_token"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


class DirectoryUnavailableError(IdentityError):
    """The directory service could not be reached or timed out."""

    kind = "directory_unavailable"
    status_code = 503


class StoreUnavailableError(IdentityError):
    """The relational store could not complete a request."""

    kind = "store_unavailable"
    status_code = 503


__all__ = [
    "ConflictError",
    "DirectoryUnavailableError",
    "IdentityError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ProvisioningError",
    "StoreUnavailableError",
    "ValidationError",
    "Violation",
]
