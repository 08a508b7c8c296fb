"""Composition root: сборка всех компонентов из настроек.

Хранилища, limiter, signer, worker и gateway создаются один раз на процесс
и передаются явно. FastAPI получает контейнер через `app.state.container`;
Celery задача и CLI worker собирают свой контейнер на время запуска.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from bridge.core.clock import Clock, SystemClock
from bridge.core.config import Settings
from bridge.core.gateway import MutationGateway
from bridge.core.rate_limit_policy import PolicyTable
from bridge.core.rate_limiter import Limiter, RateLimiter
from bridge.core.rate_limiter_redis import RedisRateLimiter
from bridge.core.signing import Signer
from bridge.db.redis import create_redis_client
from bridge.db.session import create_engine_from_url, create_schema, create_session_factory
from bridge.services.idempotency import (
    IdempotencyService,
    IdempotencyStore,
    InMemoryIdempotencyStore,
    SqlIdempotencyStore,
)
from bridge.services.outbox import InMemoryOutboxStore, OutboxStore, SqlOutboxStore
from bridge.services.records import InMemoryRecordService, RecordService, SqlRecordService
from bridge.workers.outbox_delivery import DeliveryWorker


@dataclass
class Container:
    """Набор собранных компонентов приложения."""

    settings: Settings
    clock: Clock
    outbox: OutboxStore
    idempotency: IdempotencyService
    limiter: Limiter | None
    gateway: MutationGateway
    delivery_worker: DeliveryWorker
    records: RecordService
    signer: Signer | None = None
    engine: AsyncEngine | None = None
    redis: Redis | None = None
    http_client: httpx.AsyncClient | None = None
    owned: list = field(default_factory=list)

    async def prepare(self) -> None:
        """Создать схему для SQLite (в Postgres схему накатывает Alembic)."""

        if self.engine is not None and self.engine.dialect.name == "sqlite":
            await create_schema(self.engine)

    async def sweep(self) -> dict[str, int]:
        """Очистить просроченные ключи идемпотентности и простаивающие bucket'ы."""

        keys = await self.idempotency.sweep()
        buckets = await self.limiter.sweep() if self.limiter is not None else 0
        return {"idempotency_keys": keys, "rate_limit_buckets": buckets}

    async def aclose(self) -> None:
        if self.http_client is not None and "http_client" in self.owned:
            await self.http_client.aclose()
        if self.redis is not None and "redis" in self.owned:
            await self.redis.aclose()
        if self.engine is not None and "engine" in self.owned:
            await self.engine.dispose()


def build_container(
    settings: Settings,
    *,
    clock: Clock | None = None,
    engine: AsyncEngine | None = None,
    redis: Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Container:
    """Собрать контейнер по настройкам.

    Parameters
    ----------
    settings : Settings
        Настройки приложения.
    clock : Clock | None
        Часы (в тестах управляемые).
    engine : AsyncEngine | None
        Готовый engine; иначе создаётся из `DATABASE_ASYNC_URL`.
    redis : Redis | None
        Готовый клиент Redis (в тестах fakeredis).
    http_client : httpx.AsyncClient | None
        Клиент для webhook (в тестах с `MockTransport`).

    Returns
    -------
    Container
        Собранный контейнер.
    """

    clock = clock or SystemClock()
    owned: list[str] = []

    outbox: OutboxStore
    idempotency_store: IdempotencyStore
    records: RecordService
    if settings.storage_backend == "database":
        if engine is None:
            engine = create_engine_from_url(settings.sqlalchemy_async_url)
            owned.append("engine")
        session_factory = create_session_factory(engine)
        outbox = SqlOutboxStore(
            session_factory,
            clock,
            max_attempts=settings.outbox_max_attempts,
            lease_seconds=settings.effective_outbox_lease_seconds,
        )
        idempotency_store = SqlIdempotencyStore(
            session_factory,
            clock,
            ttl_seconds=settings.idempotency_ttl_seconds,
            claim_timeout_seconds=settings.idempotency_claim_timeout_seconds,
        )
        records = SqlRecordService(session_factory, clock)
    else:
        memory_outbox = InMemoryOutboxStore(clock, max_attempts=settings.outbox_max_attempts)
        outbox = memory_outbox
        idempotency_store = InMemoryIdempotencyStore(
            clock,
            ttl_seconds=settings.idempotency_ttl_seconds,
            claim_timeout_seconds=settings.idempotency_claim_timeout_seconds,
        )
        records = InMemoryRecordService(memory_outbox, clock)

    limiter: Limiter | None = None
    if settings.rate_limit_enabled:
        if settings.rate_limit_backend == "redis":
            if redis is None:
                redis = create_redis_client(settings)
                owned.append("redis")
            limiter = RedisRateLimiter(
                redis,
                clock,
                idle_seconds=settings.rate_limit_idle_seconds,
            )
        else:
            limiter = RateLimiter(clock, idle_seconds=settings.rate_limit_idle_seconds)

    signer: Signer | None = None
    if settings.automation_webhook_secret is not None:
        signer = Signer(
            settings.automation_webhook_secret.get_secret_value(),
            clock,
            product_name=settings.automation_product_name,
        )

    if settings.automation_webhook_url and http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.outbox_delivery_timeout_seconds),
        )
        owned.append("http_client")

    idempotency = IdempotencyService(idempotency_store, clock)
    worker = DeliveryWorker(
        outbox,
        signer,
        clock,
        settings.automation_webhook_url,
        timeout_seconds=settings.outbox_delivery_timeout_seconds,
        batch_size=settings.outbox_batch_size,
        concurrency=settings.outbox_delivery_concurrency,
        http_client=http_client,
    )
    gateway = MutationGateway(
        limiter,
        idempotency,
        PolicyTable(settings),
        header_whitelist=settings.idempotency_headers_list,
        derive_keys=settings.idempotency_derive_keys,
    )
    return Container(
        settings=settings,
        clock=clock,
        outbox=outbox,
        idempotency=idempotency,
        limiter=limiter,
        gateway=gateway,
        delivery_worker=worker,
        records=records,
        signer=signer,
        engine=engine,
        redis=redis,
        http_client=http_client,
        owned=owned,
    )

