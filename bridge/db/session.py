"""Async engine и фабрика сессий БД.

Notes
-----
Фабрика сессий не хранится на уровне модуля: её создаёт composition root
(`bridge.container.build_container`) и передаёт в SQL-хранилища явно,
поэтому в тестах достаточно собрать свой контейнер на SQLite.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bridge.db.base import Base


def create_engine_from_url(url: str) -> AsyncEngine:
    """Создать SQLAlchemy AsyncEngine.

    Parameters
    ----------
    url : str
        Async URL (`postgresql+asyncpg://...`, `sqlite+aiosqlite://...`).

    Returns
    -------
    sqlalchemy.ext.asyncio.AsyncEngine
        Async engine для подключения к БД.
    """

    return create_async_engine(url, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Создать фабрику async сессий."""

    return async_sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Создать таблицы напрямую из метаданных (SQLite/offline, тесты).

    В проде схема накатывается Alembic'ом.
    """

    # регистрируем модели в metadata
    from bridge.models import idempotency, outbox, record  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
