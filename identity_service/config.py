"""Configuration management for the identity service."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .hashing import HashingScheme

_SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

ENV_PREFIX = "IDENTITY_"


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value {value!r}")


def _env_int(value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value {value!r}") from exc


def _env_float(value: Optional[str], default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number {value!r}") from exc


def _env_list(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _table_name(value: object, *, setting: str) -> str:
    text = str(value).strip()
    if not _SQL_IDENTIFIER.fullmatch(text):
        raise ValueError(f"{setting} must be a plain SQL identifier, got {text!r}")
    return text


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the relational store."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "identity.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class DirectorySettings:
    """Connection and layout settings for the LDAP directory."""

    url: str = "ldap://localhost:389"
    bind_dn: Optional[str] = None
    bind_password: Optional[str] = None
    users_base_dn: str = "ou=users,dc=example,dc=org"
    groups_base_dn: str = "ou=groups,dc=example,dc=org"
    default_group_cn: str = "chat_groups"
    user_object_classes: Tuple[str, ...] = ("inetOrgPerson", "top", "resetTokenAux")
    verify_certificates: bool = True
    connect_timeout: float = 5.0
    operation_timeout: float = 10.0

    @property
    def has_service_credentials(self) -> bool:
        return bool(self.bind_dn and self.bind_password)

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "DirectorySettings":
        defaults = DirectorySettings()
        object_classes = data.get("user_object_classes")
        if isinstance(object_classes, str):
            object_classes = [item.strip() for item in object_classes.split(",") if item.strip()]
        return DirectorySettings(
            url=str(data.get("url", defaults.url)),
            bind_dn=_optional_text(data.get("bind_dn")),
            bind_password=_optional_text(data.get("bind_password")),
            users_base_dn=str(data.get("users_base_dn", defaults.users_base_dn)),
            groups_base_dn=str(data.get("groups_base_dn", defaults.groups_base_dn)),
            default_group_cn=str(data.get("default_group_cn", defaults.default_group_cn)),
            user_object_classes=tuple(object_classes) if object_classes else defaults.user_object_classes,
            verify_certificates=bool(data.get("verify_certificates", defaults.verify_certificates)),
            connect_timeout=float(data.get("connect_timeout", defaults.connect_timeout)),
            operation_timeout=float(data.get("operation_timeout", defaults.operation_timeout)),
        )


@dataclass(frozen=True)
class DatabaseSettings:
    """Location and table layout of the relational store."""

    path: Path = field(default_factory=lambda: resolve_database_path(None))
    primary_user_table: str = "user_main_details"
    fallback_user_table: Optional[str] = None
    password_reset_table: str = "password_resets"

    def __post_init__(self) -> None:
        _table_name(self.primary_user_table, setting="primary_user_table")
        _table_name(self.password_reset_table, setting="password_reset_table")
        if self.fallback_user_table is not None:
            _table_name(self.fallback_user_table, setting="fallback_user_table")

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "DatabaseSettings":
        defaults = DatabaseSettings()
        raw_path = data.get("path")
        if raw_path:
            candidate = Path(str(raw_path)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            path = candidate.resolve(strict=False)
        else:
            path = defaults.path
        return DatabaseSettings(
            path=path,
            primary_user_table=str(data.get("primary_user_table", defaults.primary_user_table)),
            fallback_user_table=_optional_text(data.get("fallback_user_table")),
            password_reset_table=str(data.get("password_reset_table", defaults.password_reset_table)),
        )


@dataclass(frozen=True)
class MailSettings:
    """SMTP settings for password reset notifications."""

    enabled: bool = False
    host: Optional[str] = None
    port: int = 587
    use_ssl: bool = False
    starttls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    timeout: float = 10.0
    subject: str = "Reset your password"

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "MailSettings":
        defaults = MailSettings()
        return MailSettings(
            enabled=bool(data.get("enabled", defaults.enabled)),
            host=_optional_text(data.get("host")),
            port=int(data.get("port", defaults.port)),
            use_ssl=bool(data.get("use_ssl", defaults.use_ssl)),
            starttls=bool(data.get("starttls", defaults.starttls)),
            username=_optional_text(data.get("username")),
            password=_optional_text(data.get("password")),
            sender=_optional_text(data.get("sender")),
            timeout=float(data.get("timeout", defaults.timeout)),
            subject=str(data.get("subject", defaults.subject)),
        )


@dataclass(frozen=True)
class ResetSettings:
    """Password reset link and token lifetime settings."""

    base_url: Optional[str] = None
    token_ttl: timedelta = timedelta(hours=1)
    expose_reset_url: bool = False

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "ResetSettings":
        defaults = ResetSettings()
        ttl_seconds = data.get("token_ttl_seconds")
        return ResetSettings(
            base_url=_optional_text(data.get("base_url")),
            token_ttl=timedelta(seconds=int(ttl_seconds)) if ttl_seconds else defaults.token_ttl,
            expose_reset_url=bool(data.get("expose_reset_url", defaults.expose_reset_url)),
        )


@dataclass(frozen=True)
class Settings:
    """Complete service configuration, loaded once at startup."""

    directory: DirectorySettings = field(default_factory=DirectorySettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    mail: MailSettings = field(default_factory=MailSettings)
    reset: ResetSettings = field(default_factory=ResetSettings)
    hashing: HashingScheme = field(default_factory=HashingScheme)
    client_origins: Tuple[str, ...] = ("http://localhost:3000",)
    health_check_interval: Optional[float] = 20.0


def _hashing_from_dict(data: Mapping[str, object]) -> HashingScheme:
    defaults = HashingScheme()
    return HashingScheme(
        variant=str(data.get("variant", defaults.variant)),
        memory_cost=int(data.get("memory_cost", defaults.memory_cost)),
        time_cost=int(data.get("time_cost", defaults.time_cost)),
        parallelism=int(data.get("parallelism", defaults.parallelism)),
    )


def _section(raw: Mapping[str, object], name: str) -> Dict[str, object]:
    section = raw.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return dict(section)


def settings_from_dict(raw: Mapping[str, object], base_path: Path | None = None) -> Settings:
    """Build :class:`Settings` from a parsed configuration document."""

    origins = raw.get("client_origins")
    if isinstance(origins, str):
        origins = [item.strip() for item in origins.split(",") if item.strip()]
    interval = raw.get("health_check_interval", Settings.health_check_interval)
    return Settings(
        directory=DirectorySettings.from_dict(_section(raw, "directory")),
        database=DatabaseSettings.from_dict(_section(raw, "database"), base_path=base_path),
        mail=MailSettings.from_dict(_section(raw, "mail")),
        reset=ResetSettings.from_dict(_section(raw, "reset")),
        hashing=_hashing_from_dict(_section(raw, "hashing")),
        client_origins=tuple(origins) if origins else Settings().client_origins,
        health_check_interval=float(interval) if interval else None,
    )


def apply_environment(settings: Settings, environ: Mapping[str, str]) -> Settings:
    """Overlay ``IDENTITY_*`` environment variables onto ``settings``."""

    def env(name: str) -> Optional[str]:
        return environ.get(ENV_PREFIX + name)

    directory = settings.directory
    directory = replace(
        directory,
        url=env("LDAP_URL") or directory.url,
        bind_dn=_optional_text(env("LDAP_BIND_DN")) or directory.bind_dn,
        bind_password=_optional_text(env("LDAP_BIND_PASSWORD")) or directory.bind_password,
        users_base_dn=env("LDAP_USERS_BASE_DN") or directory.users_base_dn,
        groups_base_dn=env("LDAP_GROUPS_BASE_DN") or directory.groups_base_dn,
        default_group_cn=env("LDAP_DEFAULT_GROUP_CN") or directory.default_group_cn,
        verify_certificates=_env_bool(env("LDAP_REJECT_UNAUTHORIZED"), directory.verify_certificates),
        connect_timeout=_env_float(env("LDAP_CONNECT_TIMEOUT"), directory.connect_timeout),
        operation_timeout=_env_float(env("LDAP_TIMEOUT"), directory.operation_timeout),
    )

    database = settings.database
    db_path = env("DB_PATH")
    database = replace(
        database,
        path=resolve_database_path(db_path) if db_path else database.path,
        primary_user_table=env("DB_PRIMARY_USER_TABLE") or database.primary_user_table,
        fallback_user_table=_optional_text(env("DB_FALLBACK_USER_TABLE")) or database.fallback_user_table,
        password_reset_table=env("DB_PASSWORD_RESET_TABLE") or database.password_reset_table,
    )

    mail = settings.mail
    mail = replace(
        mail,
        enabled=_env_bool(env("MAIL_ENABLED"), mail.enabled),
        host=_optional_text(env("MAIL_HOST")) or mail.host,
        port=_env_int(env("MAIL_PORT"), mail.port),
        use_ssl=_env_bool(env("MAIL_SECURE"), mail.use_ssl),
        starttls=_env_bool(env("MAIL_STARTTLS"), mail.starttls),
        username=_optional_text(env("MAIL_USER")) or mail.username,
        password=_optional_text(env("MAIL_PASS")) or mail.password,
        sender=_optional_text(env("MAIL_FROM")) or mail.sender,
    )

    reset = settings.reset
    ttl_seconds = env("RESET_TOKEN_TTL_SECONDS")
    reset = replace(
        reset,
        base_url=_optional_text(env("RESET_BASE_URL")) or reset.base_url,
        token_ttl=timedelta(seconds=_env_int(ttl_seconds, 0)) if ttl_seconds else reset.token_ttl,
        expose_reset_url=_env_bool(env("EXPOSE_RESET_URL"), reset.expose_reset_url),
    )

    hashing = settings.hashing
    hashing = replace(
        hashing,
        memory_cost=_env_int(env("ARGON2_MEMORY_COST"), hashing.memory_cost),
        time_cost=_env_int(env("ARGON2_TIME_COST"), hashing.time_cost),
        parallelism=_env_int(env("ARGON2_PARALLELISM"), hashing.parallelism),
    )

    interval = settings.health_check_interval
    raw_interval = env("HEALTH_CHECK_INTERVAL")
    if raw_interval is not None:
        interval = _env_float(raw_interval, 0.0) or None

    return replace(
        settings,
        directory=directory,
        database=database,
        mail=mail,
        reset=reset,
        hashing=hashing,
        client_origins=_env_list(env("CLIENT_ORIGINS"), settings.client_origins),
        health_check_interval=interval,
    )


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the optional YAML configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (Path(__file__).resolve().parent.parent / "config" / "identity.yaml").resolve(strict=False)
    return candidate if candidate.exists() else None


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from the YAML file (if any) and the environment."""

    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(environ.get(ENV_PREFIX + "CONFIG"))

    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, Mapping):
            raise ValueError("Configuration file must contain a mapping at the top level")
        settings = settings_from_dict(raw, base_path=config_path.parent)
    else:
        settings = Settings()

    return apply_environment(settings, environ)


__all__ = [
    "DatabaseSettings",
    "DirectorySettings",
    "MailSettings",
    "ResetSettings",
    "Settings",
    "load_settings",
    "resolve_config_path",
    "resolve_database_path",
    "settings_from_dict",
]
