"""Identity provisioning and credential lifecycle across the user database and LDAP."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .database import RecordStore
from .errors import IdentityError


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the FastAPI application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "IdentityError",
    "RecordStore",
    "Settings",
    "create_app",
    "load_settings",
]
