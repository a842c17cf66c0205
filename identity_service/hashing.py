"""Password hashing for credentials stored in the directory."""
from __future__ import annotations

from dataclasses import dataclass

from passlib.context import CryptContext

# OpenLDAP's argon2 password module recognises values tagged with this marker.
ARGON2_MARKER = "{ARGON2}"


@dataclass(frozen=True)
class HashingScheme:
    """Process-wide argon2id parameters.

    Defaults match the OpenLDAP argon2 overlay so slapd can verify stored hashes.
    """

    variant: str = "id"
    memory_cost: int = 65536
    time_cost: int = 2
    parallelism: int = 1
    marker: str = ARGON2_MARKER

    def __post_init__(self) -> None:
        if self.variant not in {"i", "d", "id"}:
            raise ValueError(f"Unsupported argon2 variant {self.variant!r}")
        if self.memory_cost < 8 * self.parallelism:
            raise ValueError("argon2 memory cost must be at least 8 KiB per lane")
        if self.time_cost < 1:
            raise ValueError("argon2 time cost must be at least 1")
        if self.parallelism < 1:
            raise ValueError("argon2 parallelism must be at least 1")


DEFAULT_SCHEME = HashingScheme()


class CredentialHasher:
    """Turns plaintext passwords into directory-verifiable hashes."""

    def __init__(self, scheme: HashingScheme = DEFAULT_SCHEME) -> None:
        self._scheme = scheme
        self._context = CryptContext(
            schemes=["argon2"],
            argon2__type=scheme.variant,
            argon2__memory_cost=scheme.memory_cost,
            argon2__rounds=scheme.time_cost,
            argon2__parallelism=scheme.parallelism,
        )

    @property
    def scheme(self) -> HashingScheme:
        return self._scheme

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password must not be empty")
        return f"{self._scheme.marker}{self._context.hash(password)}"

    def verify(self, password: str, stored: str) -> bool:
        """Return ``True`` if ``password`` matches a value produced by :meth:`hash`."""

        if not password or not self.recognises(stored):
            return False
        try:
            return self._context.verify(password, stored[len(self._scheme.marker):])
        except ValueError:
            return False

    def recognises(self, stored: str) -> bool:
        return stored.startswith(self._scheme.marker)


__all__ = ["ARGON2_MARKER", "CredentialHasher", "DEFAULT_SCHEME", "HashingScheme"]
