from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from identity_service.config import (
    DatabaseSettings,
    Settings,
    apply_environment,
    load_settings,
    resolve_database_path,
)


def test_defaults_mirror_the_reference_deployment() -> None:
    settings = Settings()

    assert settings.directory.default_group_cn == "chat_groups"
    assert settings.directory.user_object_classes == ("inetOrgPerson", "top", "resetTokenAux")
    assert settings.directory.verify_certificates is True
    assert settings.directory.has_service_credentials is False
    assert settings.database.primary_user_table == "user_main_details"
    assert settings.database.password_reset_table == "password_resets"
    assert settings.database.fallback_user_table is None
    assert settings.reset.token_ttl == timedelta(hours=1)
    assert settings.health_check_interval == 20.0


def test_load_settings_reads_yaml_then_environment(tmp_path: Path) -> None:
    config = tmp_path / "identity.yaml"
    config.write_text(
        "\n".join(
            [
                "directory:",
                "  url: ldaps://ldap.example.org",
                "  bind_dn: cn=admin,dc=example,dc=org",
                "  bind_password: from-file",
                "  default_group_cn: staff",
                "database:",
                "  path: db/identity.sqlite3",
                "  fallback_user_table: legacy_users",
                "reset:",
                "  base_url: https://chat.example.org/",
                "  token_ttl_seconds: 900",
                "client_origins: https://chat.example.org, https://admin.example.org",
            ]
        ),
        encoding="utf-8",
    )
    environ = {
        "IDENTITY_LDAP_BIND_PASSWORD": "from-env",
        "IDENTITY_MAIL_ENABLED": "yes",
        "IDENTITY_MAIL_HOST": "smtp.example.org",
        "IDENTITY_MAIL_PORT": "465",
        "IDENTITY_MAIL_SECURE": "true",
    }

    settings = load_settings(config, environ=environ)

    assert settings.directory.url == "ldaps://ldap.example.org"
    assert settings.directory.bind_password == "from-env"
    assert settings.directory.default_group_cn == "staff"
    assert settings.database.path == (tmp_path / "db" / "identity.sqlite3").resolve()
    assert settings.database.fallback_user_table == "legacy_users"
    assert settings.reset.base_url == "https://chat.example.org/"
    assert settings.reset.token_ttl == timedelta(seconds=900)
    assert settings.client_origins == ("https://chat.example.org", "https://admin.example.org")
    assert settings.mail.enabled is True
    assert settings.mail.port == 465
    assert settings.mail.use_ssl is True


def test_environment_config_path_is_used(tmp_path: Path) -> None:
    config = tmp_path / "custom.yaml"
    config.write_text("directory:\n  users_base_dn: ou=people,dc=test\n", encoding="utf-8")

    settings = load_settings(environ={"IDENTITY_CONFIG": str(config)})

    assert settings.directory.users_base_dn == "ou=people,dc=test"


def test_environment_overrides_without_file(tmp_path: Path) -> None:
    environ = {
        "IDENTITY_DB_PATH": str(tmp_path / "env.sqlite3"),
        "IDENTITY_LDAP_REJECT_UNAUTHORIZED": "0",
        "IDENTITY_LDAP_TIMEOUT": "2.5",
        "IDENTITY_EXPOSE_RESET_URL": "on",
        "IDENTITY_ARGON2_MEMORY_COST": "4096",
        "IDENTITY_HEALTH_CHECK_INTERVAL": "0",
    }

    settings = apply_environment(Settings(), environ)

    assert settings.database.path == (tmp_path / "env.sqlite3").resolve()
    assert settings.directory.verify_certificates is False
    assert settings.directory.operation_timeout == 2.5
    assert settings.reset.expose_reset_url is True
    assert settings.hashing.memory_cost == 4096
    assert settings.health_check_interval is None


def test_invalid_boolean_is_reported() -> None:
    with pytest.raises(ValueError):
        apply_environment(Settings(), {"IDENTITY_MAIL_ENABLED": "maybe"})


def test_table_names_must_be_plain_identifiers(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        DatabaseSettings(path=tmp_path / "x.sqlite3", primary_user_table="users; DROP TABLE users")
    with pytest.raises(ValueError):
        apply_environment(Settings(), {"IDENTITY_DB_FALLBACK_USER_TABLE": "legacy-users"})


def test_resolve_database_path_defaults_to_data_directory() -> None:
    path = resolve_database_path(None)

    assert path.name == "identity.sqlite3"
    assert path.parent.name == "data"
