"""Доставка outbox событий в webhook (Automation Bridge).

Поведение
---------
- Берёт "созревшие" события (`due_events`), старые первыми.
- Каждое событие подписывается (HMAC) и отправляется POST'ом в webhook.
- 2xx -> `mark_delivered`; иначе (статус, таймаут, сеть) -> `mark_failed`
  с backoff по расписанию.
- Ошибка одного события не прерывает пачку.
- Если webhook не настроен, события помечаются доставленными без HTTP
  (demo режим).

Важно
-----
Tick не реентерабелен: пока идёт один tick, второй сразу возвращается
со `skipped=True`. Между процессами (API, Celery, CLI `--loop`, реплики)
одно событие не уходит дважды за счёт lease в `SqlOutboxStore.due_events`;
Celery задача дополнительно берёт Redis lock (`bridge.tasks`).
"""

from __future__ import annotations

import argparse
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime

import httpx
from loguru import logger

from bridge.core.clock import Clock
from bridge.core.errors import DeliveryFailed
from bridge.core.signing import Signer
from bridge.db.redis import canonical_json
from bridge.services.outbox import OutboxEntry, OutboxStore

DEFAULT_TIMEOUT_SECONDS = 30.0
_MAX_ERROR_BODY = 500


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    status_code: int | None = None
    error: str | None = None
    latency_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class DeliveryTickResult:
    """Итог одного прохода delivery worker'а."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: bool = False
    duration_ms: float = 0.0


def build_event_body(entry: OutboxEntry, sent_at: datetime) -> str:
    """Тело webhook запроса (каноничный JSON).

    `timestamp` есть время попытки доставки, а не создания события:
    ретрай через сутки несёт свежее время.
    """

    return canonical_json(
        {
            "event": entry.event_name,
            "payload": entry.payload,
            "timestamp": sent_at.isoformat(),
        }
    )


class DeliveryWorker:
    """Worker доставки outbox событий.

    Parameters
    ----------
    outbox : OutboxStore
        Хранилище outbox.
    signer : Signer | None
        Подпись запросов; обязателен, если задан `webhook_url`.
    clock : Clock
        Источник времени.
    webhook_url : str | None
        URL получателя; None включает demo режим.
    timeout_seconds : float, default=30
        Жёсткий таймаут одного запроса (общий, включая чтение тела ответа).
    batch_size : int, default=50
        Размер пачки по умолчанию.
    concurrency : int, default=1
        Сколько событий доставляется одновременно.
    http_client : httpx.AsyncClient | None
        Внешний клиент (в тестах с `MockTransport`).
    """

    def __init__(
        self,
        outbox: OutboxStore,
        signer: Signer | None,
        clock: Clock,
        webhook_url: str | None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        batch_size: int = 50,
        concurrency: int = 1,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if webhook_url and signer is None:
            raise ValueError("signer is required when webhook_url is set")
        self.outbox = outbox
        self.signer = signer
        self.clock = clock
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self._http_client = http_client
        self._tick_lock = asyncio.Lock()

    async def deliver(
        self,
        entry: OutboxEntry,
        client: httpx.AsyncClient | None = None,
    ) -> DeliveryResult:
        """Отправить одно событие (без изменения outbox).

        Returns
        -------
        DeliveryResult
            Успех, статус ответа, ошибка и задержка.
        """

        if not self.webhook_url:
            return DeliveryResult(success=True)
        if client is not None:
            return await self._deliver_with(client, entry)
        if self._http_client is not None:
            return await self._deliver_with(self._http_client, entry)
        async with self._client() as own_client:
            return await self._deliver_with(own_client, entry)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))

    async def _process(
        self,
        entry: OutboxEntry,
        client: httpx.AsyncClient | None,
        semaphore: asyncio.Semaphore,
    ) -> str:
        async with semaphore:
            try:
                if client is None:
                    await self.outbox.mark_delivered(entry.id)
                    logger.info(
                        "Outbox event delivered (no webhook configured) id={id} event={e}",
                        id=entry.id,
                        e=entry.event_name,
                    )
                    return "successful"

                result = await self._deliver_with(client, entry)
                if result.success:
                    await self.outbox.mark_delivered(entry.id)
                    logger.info(
                        "Outbox event delivered id={id} event={e} status={s} latency={l:.0f}ms",
                        id=entry.id,
                        e=entry.event_name,
                        s=result.status_code,
                        l=result.latency_ms,
                    )
                    return "successful"

                updated = await self.outbox.mark_failed(entry.id, result.error or "unknown error")
                if updated is not None and updated.is_exhausted(self.outbox.max_attempts):
                    return "exhausted"
                return "failed"
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Outbox event processing failed id={id}: {err}",
                    id=entry.id,
                    err=str(exc),
                )
                return "failed"

    async def _post(
        self,
        client: httpx.AsyncClient,
        body: str,
        headers: dict[str, str],
    ) -> httpx.Response:
        # httpx.Timeout ограничивает каждую фазу (connect/read/write) отдельно;
        # asyncio.timeout задаёт общий дедлайн на весь запрос вместе с телом ответа.
        try:
            async with asyncio.timeout(self.timeout_seconds):
                response = await client.post(
                    self.webhook_url,
                    content=body.encode("utf-8"),
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise DeliveryFailed(f"timeout after {self.timeout_seconds}s: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"network error: {exc}") from exc

        if not response.is_success:
            raise DeliveryFailed(
                f"HTTP {response.status_code}: {response.text[:_MAX_ERROR_BODY]}",
                status_code=response.status_code,
            )
        return response

    async def _deliver_with(self, client: httpx.AsyncClient, entry: OutboxEntry) -> DeliveryResult:
        assert self.signer is not None
        signed = self.signer.sign(build_event_body(entry, self.clock.now()))
        headers = self.signer.webhook_headers(signed)
        started = time.perf_counter()
        try:
            response = await self._post(client, signed.body, headers)
        except DeliveryFailed as exc:
            return DeliveryResult(
                success=False,
                status_code=exc.response_status,
                error=exc.message,
                latency_ms=_elapsed_ms(started),
            )
        return DeliveryResult(
            success=True,
            status_code=response.status_code,
            latency_ms=_elapsed_ms(started),
        )

    async def run_tick(self, limit: int | None = None) -> DeliveryTickResult:
        """Один проход доставки.

        Parameters
        ----------
        limit : int | None
            Размер пачки; по умолчанию `batch_size`.

        Returns
        -------
        DeliveryTickResult
            Счётчики прохода.

        Raises
        ------
        StorageUnavailable
            Если не удалось прочитать список событий.
        """

        if self._tick_lock.locked():
            logger.info("Outbox delivery tick already running, skipping")
            return DeliveryTickResult(skipped=True)

        async with self._tick_lock:
            started = time.perf_counter()
            events = await self.outbox.due_events(limit or self.batch_size)
            if not events:
                return DeliveryTickResult(duration_ms=_elapsed_ms(started))

            semaphore = asyncio.Semaphore(self.concurrency)
            if self.webhook_url:
                client = self._http_client
                if client is None:
                    async with self._client() as own_client:
                        outcomes = await self._run_all(events, own_client, semaphore)
                else:
                    outcomes = await self._run_all(events, client, semaphore)
            else:
                outcomes = await self._run_all(events, None, semaphore)

            result = DeliveryTickResult(
                processed=len(events),
                successful=outcomes.count("successful"),
                failed=outcomes.count("failed") + outcomes.count("exhausted"),
                exhausted=outcomes.count("exhausted"),
                duration_ms=_elapsed_ms(started),
            )
            logger.info(
                "Outbox delivery tick processed={p} successful={s} failed={f} "
                "exhausted={x} duration={d:.0f}ms",
                p=result.processed,
                s=result.successful,
                f=result.failed,
                x=result.exhausted,
                d=result.duration_ms,
            )
            return result

    async def _run_all(
        self,
        events: list[OutboxEntry],
        client: httpx.AsyncClient | None,
        semaphore: asyncio.Semaphore,
    ) -> list[str]:
        tasks = [self._process(entry, client, semaphore) for entry in events]
        return list(await asyncio.gather(*tasks))


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


async def run_forever(worker: DeliveryWorker, poll_seconds: float) -> None:
    """Последовательные tick'и с паузой между ними."""

    logger.info(
        "Outbox delivery started poll={p}s batch={b}",
        p=poll_seconds,
        b=worker.batch_size,
    )
    while True:
        try:
            await worker.run_tick()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Outbox delivery loop failed: {err}", err=str(exc))
        await asyncio.sleep(poll_seconds)


async def _run(loop: bool) -> None:
    from bridge.container import build_container
    from bridge.core.config import get_settings

    settings = get_settings()
    container = build_container(settings)
    try:
        await container.prepare()
        if loop:
            await run_forever(container.delivery_worker, settings.outbox_poll_seconds)
        else:
            await container.delivery_worker.run_tick()
    finally:
        await container.aclose()


def main(argv: list[str] | None = None) -> None:
    """Entrypoint: один tick или цикл (`--loop`)."""

    parser = argparse.ArgumentParser(description="Deliver due outbox events to the webhook.")
    parser.add_argument("--loop", action="store_true", help="poll forever")
    args = parser.parse_args(argv)

    from bridge.core.config import get_settings
    from bridge.core.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)
    asyncio.run(_run(args.loop))


if __name__ == "__main__":
    main()
