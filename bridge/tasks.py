"""Celery задачи (доставка outbox по расписанию и очистка).

Важно
-----
Celery использует отдельный брокер для задач (по умолчанию Redis).
Таймера внутри ядра нет: периодичность задаёт beat (`beat_schedule`).
Каждая задача собирает свой контейнер на время запуска, поэтому
для доставки нужен `STORAGE_BACKEND=database` (memory outbox живёт только
внутри процесса API).
"""

from __future__ import annotations

import asyncio

import redis
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from loguru import logger
from redis.exceptions import LockError

from bridge.container import build_container
from bridge.core.config import get_settings
from bridge.core.logging import setup_logging

DELIVERY_LOCK_KEY = "lock:automation:deliver_outbox"


def make_celery() -> Celery:
    """Создать Celery приложение.

    Returns
    -------
    celery.Celery
        Celery app.
    """

    settings = get_settings()
    celery_app = Celery(
        "automation_bridge",
        broker=settings.effective_celery_broker_url,
        backend=settings.effective_celery_result_backend,
    )
    celery_app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        beat_schedule={
            "automation-deliver-outbox": {
                "task": "automation.deliver_outbox",
                "schedule": settings.outbox_poll_seconds,
            },
            "automation-sweep": {
                "task": "automation.sweep",
                "schedule": settings.idempotency_sweep_seconds,
            },
        },
    )
    return celery_app


celery_app = make_celery()


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    """Логи worker'а через loguru (вместо logging-конфига Celery)."""

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)


def _lock_client(url: str) -> redis.Redis:
    """Sync клиент Redis для распределённого lock'а delivery tick."""

    return redis.Redis.from_url(url)


async def _deliver_once() -> dict:
    container = build_container(get_settings())
    try:
        await container.prepare()
        result = await container.delivery_worker.run_tick()
    finally:
        await container.aclose()
    return {
        "processed": result.processed,
        "successful": result.successful,
        "failed": result.failed,
        "exhausted": result.exhausted,
        "skipped": result.skipped,
        "duration_ms": result.duration_ms,
    }


async def _sweep_once() -> dict:
    container = build_container(get_settings())
    try:
        await container.prepare()
        return await container.sweep()
    finally:
        await container.aclose()


@celery_app.task(name="automation.deliver_outbox")
def deliver_outbox() -> dict:
    """Один delivery tick под распределённым lock'ом.

    Returns
    -------
    dict
        Счётчики tick'а; `skipped=True`, если tick уже идёт в другом worker'е.
    """

    settings = get_settings()
    client = _lock_client(settings.redis_dsn)
    lock = client.lock(
        DELIVERY_LOCK_KEY,
        timeout=settings.outbox_tick_lock_seconds,
        blocking=False,
    )
    if not lock.acquire():
        logger.info("Outbox delivery tick is running elsewhere, skipping")
        return {"skipped": True}
    try:
        return asyncio.run(_deliver_once())
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning("Outbox delivery lock expired before release")
        client.close()


@celery_app.task(name="automation.sweep")
def sweep() -> dict:
    """Очистить просроченные ключи идемпотентности и простаивающие bucket'ы."""

    removed = asyncio.run(_sweep_once())
    logger.info(
        "Sweep completed idempotency_keys={k} rate_limit_buckets={b}",
        k=removed["idempotency_keys"],
        b=removed["rate_limit_buckets"],
    )
    return removed
