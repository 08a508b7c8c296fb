"""Утилиты для тестов (управляемые часы, TestClient, async SQLite)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from bridge.container import Container, build_container
from bridge.core.config import Settings
from bridge.core.security import create_access_token
from bridge.db.session import create_schema, create_session_factory
from bridge.main import create_app

SECRET_KEY = "test-secret-key-with-min-32-chars-123456"
WEBHOOK_URL = "https://hooks.example.test/automation"
WEBHOOK_SECRET = "whsec-test"
TENANT = "org-1"


class ManualClock:
    """Часы, которые двигаются только вручную."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._mono = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds


def make_settings(**overrides) -> Settings:
    """Настройки для тестов (без `.env`)."""

    values = {"secret_key": SECRET_KEY, "storage_backend": "memory"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_sqlite_engine(tmp_path: Path) -> AsyncEngine:
    """Async SQLite engine со схемой приложения."""

    db_path = tmp_path / "test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    asyncio.run(create_schema(engine))
    return engine


def make_session_factory(tmp_path: Path):
    return create_session_factory(make_sqlite_engine(tmp_path))


def make_container(
    settings: Settings | None = None,
    *,
    clock: ManualClock | None = None,
    tmp_path: Path | None = None,
    http_client: httpx.AsyncClient | None = None,
    redis=None,
) -> Container:
    settings = settings or make_settings()
    engine = None
    if settings.storage_backend == "database":
        assert tmp_path is not None, "database backend needs tmp_path"
        engine = make_sqlite_engine(tmp_path)
    return build_container(
        settings,
        clock=clock or ManualClock(),
        engine=engine,
        redis=redis,
        http_client=http_client,
    )


def make_client(container: Container) -> TestClient:
    """TestClient поверх приложения с готовым контейнером."""

    return TestClient(create_app(container=container))


def auth_headers(user_id: str = "user-1", tenant_id: str = TENANT, **extra: str) -> dict[str, str]:
    token = create_access_token(user_id, make_settings())
    headers = {"Authorization": f"Bearer {token}", "X-Org-Id": tenant_id}
    headers.update(extra)
    return headers
