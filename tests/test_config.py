"""Тесты валидации настроек."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from tests.helpers import SECRET_KEY, WEBHOOK_URL, make_container, make_settings


def test_defaults() -> None:
    settings = make_settings()

    assert settings.storage_backend == "memory"
    assert settings.outbox_max_attempts == 8
    assert settings.idempotency_ttl_seconds == 86400
    assert settings.rate_limit_window_seconds == 60.0
    assert settings.idempotency_headers_list == ["content-type"]
    assert settings.rate_limit_policy_overrides == {}


def test_short_secret_key_is_rejected() -> None:
    with pytest.raises(ValidationError):
        make_settings(secret_key="short")


def test_webhook_url_requires_secret() -> None:
    with pytest.raises(ValidationError) as exc_info:
        make_settings(automation_webhook_url=WEBHOOK_URL)

    assert "AUTOMATION_WEBHOOK_SECRET" in str(exc_info.value)


@pytest.mark.parametrize(
    "policies",
    ["not json", "[]", json.dumps({"records.createRecord": {"window_ms": 1000}})],
)
def test_invalid_rate_limit_policies_are_rejected(policies: str) -> None:
    with pytest.raises(ValidationError):
        make_settings(rate_limit_policies=policies)


def test_backend_names_are_normalized_and_validated() -> None:
    assert make_settings(storage_backend=" Database ").storage_backend == "database"
    assert make_settings(rate_limit_backend="REDIS").rate_limit_backend == "redis"

    with pytest.raises(ValidationError):
        make_settings(storage_backend="mongo")
    with pytest.raises(ValidationError):
        make_settings(rate_limit_backend="memcached")


def test_async_url_is_derived_from_sync_url() -> None:
    pg = make_settings(database_url="postgresql://u:p@db:5432/bridge")
    sqlite = make_settings(database_url="sqlite+pysqlite:///./bridge.db")
    explicit = make_settings(
        database_url="postgresql://u:p@db/bridge",
        database_async_url="postgresql+asyncpg://other/bridge",
    )

    assert pg.sqlalchemy_async_url == "postgresql+asyncpg://u:p@db:5432/bridge"
    assert sqlite.sqlalchemy_async_url == "sqlite+aiosqlite:///./bridge.db"
    assert explicit.sqlalchemy_async_url == "postgresql+asyncpg://other/bridge"


def test_postgres_dsn_requires_password() -> None:
    settings = make_settings(database_url=None, postgres_password=None)

    with pytest.raises(ValueError):
        _ = settings.sqlalchemy_url

    with_password = make_settings(database_url=None, postgres_password="pw")
    assert with_password.sqlalchemy_url == "postgresql://postgres:pw@db:5432/automation_bridge"


def test_header_whitelist_is_lowercased() -> None:
    settings = make_settings(idempotency_header_whitelist="Content-Type, X-Client-Version")

    assert settings.idempotency_headers_list == ["content-type", "x-client-version"]
    assert settings.secret_key.get_secret_value() == SECRET_KEY


def test_outbox_lease_covers_slowest_tick_by_default() -> None:
    # ceil(50 / 4) раундов по 30s + 60s запаса
    assert make_settings().effective_outbox_lease_seconds == 450
    assert make_settings(outbox_lease_seconds=120).effective_outbox_lease_seconds == 120


def test_database_backend_leases_outbox_rows(tmp_path: Path) -> None:
    container = make_container(make_settings(storage_backend="database"), tmp_path=tmp_path)

    assert container.outbox.lease_seconds == 450
