"""Alembic миграции на старте процесса.

Обычно схема накатывается отдельным шагом деплоя. Для самодостаточного
`docker compose up` миграции можно включить на старте API
(`RUN_MIGRATIONS_ON_STARTUP=true`); на Postgres их выполняет ровно один
инстанс под advisory lock.
"""

from __future__ import annotations

import time
import zlib
from contextlib import contextmanager
from pathlib import Path

import psycopg2
from alembic import command
from alembic.config import Config
from loguru import logger

from bridge.core.config import Settings

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def alembic_config(database_url: str) -> Config:
    """Alembic `Config` с URL из настроек приложения."""

    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def migration_lock_key(settings: Settings) -> int:
    """Ключ advisory lock'а: стабилен для одного приложения."""

    return zlib.crc32(settings.app_name.encode("utf-8"))


def _connect_with_retry(settings: Settings):
    tries = settings.migrations_wait_tries
    for attempt in range(1, tries + 1):
        try:
            return psycopg2.connect(settings.sqlalchemy_url)
        except psycopg2.OperationalError:
            logger.info(
                "Postgres is not ready ({i}/{n}), retry in {s}s",
                i=attempt,
                n=tries,
                s=settings.migrations_wait_sleep_seconds,
            )
            time.sleep(settings.migrations_wait_sleep_seconds)
    raise RuntimeError("database is not reachable for migrations")


@contextmanager
def _advisory_lock(settings: Settings):
    conn = _connect_with_retry(settings)
    conn.autocommit = True
    key = migration_lock_key(settings)
    try:
        with conn.cursor() as cur:
            logger.info("Waiting for migration lock key={k}", k=key)
            cur.execute("SELECT pg_advisory_lock(%s)", (key,))
        yield
    finally:
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(%s)", (key,))
        finally:
            conn.close()


def run_migrations_once(settings: Settings) -> bool:
    """Накатить миграции до head.

    Parameters
    ----------
    settings : Settings
        Настройки приложения.

    Returns
    -------
    bool
        True, если миграции запускались.

    Notes
    -----
    Ничего не делает, если хранилище не `database` или миграции на старте
    выключены.
    """

    if settings.storage_backend != "database" or not settings.run_migrations_on_startup:
        logger.info(
            "Startup migrations skipped backend={b} enabled={v}",
            b=settings.storage_backend,
            v=settings.run_migrations_on_startup,
        )
        return False

    db_url = settings.sqlalchemy_url
    if db_url.startswith("postgresql://"):
        with _advisory_lock(settings):
            command.upgrade(alembic_config(db_url), "head")
    else:
        command.upgrade(alembic_config(db_url), "head")
    logger.info("Migrations applied up to head")
    return True
