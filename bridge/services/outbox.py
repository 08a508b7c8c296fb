"""Outbox событий: расписание ретраев и хранилища (in-memory и SQL).

Жизненный цикл события
----------------------
- Producer добавляет событие (`append` / `add_outbox_event`), `attempt_count=0`.
- Delivery worker берёт "созревшие" события (`due_events`) и после попытки
  вызывает `mark_delivered` или `mark_failed`.
- Событие никогда не удаляется. `delivered_at` и исчерпание попыток
  являются взаимоисключающими терминальными состояниями.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import or_

from bridge.core.clock import Clock, ensure_utc
from bridge.core.errors import StorageUnavailable
from bridge.models.outbox import OutboxEvent

MAX_ATTEMPTS = 8

# Фиксированная бизнес-политика (секунды): 1м, 5м, 15м, 1ч, 6ч, 24ч.
# Дальше переиспользуется последнее значение, пока не исчерпан MAX_ATTEMPTS.
BACKOFF_SCHEDULE: tuple[int, ...] = (60, 300, 900, 3600, 21600, 86400)


def retry_delay_seconds(attempt_count: int, max_attempts: int = MAX_ATTEMPTS) -> int | None:
    """Задержка до следующей попытки.

    Parameters
    ----------
    attempt_count : int
        Количество неудачных попыток до текущей (0-based индекс в расписании).
    max_attempts : int, default=8
        Предел попыток.

    Returns
    -------
    int | None
        Задержка в секундах или None, если ретраев больше не будет.
    """

    if attempt_count >= max_attempts:
        return None
    index = min(max(attempt_count, 0), len(BACKOFF_SCHEDULE) - 1)
    return BACKOFF_SCHEDULE[index]


@dataclass(slots=True)
class OutboxEntry:
    """Снимок outbox события (общий для всех хранилищ)."""

    id: str
    tenant_id: str
    event_name: str
    payload: dict
    created_at: datetime
    delivered_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    next_retry_at: datetime | None = None

    def is_exhausted(self, max_attempts: int = MAX_ATTEMPTS) -> bool:
        return self.delivered_at is None and self.attempt_count >= max_attempts

    def is_due(self, now: datetime, max_attempts: int = MAX_ATTEMPTS) -> bool:
        if self.delivered_at is not None:
            return False
        if self.attempt_count >= max_attempts:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now


@dataclass(frozen=True, slots=True)
class OutboxStats:
    """Статистика доставки."""

    total: int
    delivered: int
    pending: int
    failed: int

    @property
    def delivery_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.delivered / self.total * 100


class OutboxStore(Protocol):
    """Контракт хранилища outbox."""

    max_attempts: int

    async def append(self, tenant_id: str, event_name: str, payload: dict) -> str: ...

    async def due_events(self, limit: int) -> list[OutboxEntry]: ...

    async def mark_delivered(self, event_id: str) -> None: ...

    async def mark_failed(self, event_id: str, error: str) -> OutboxEntry | None: ...

    async def get(self, event_id: str) -> OutboxEntry | None: ...

    async def list_pending(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]: ...

    async def list_exhausted(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]: ...

    async def stats(self, tenant_id: str | None = None) -> OutboxStats: ...


def _log_failure(entry: OutboxEntry, max_attempts: int) -> None:
    if entry.is_exhausted(max_attempts):
        logger.error(
            "Outbox event exhausted id={id} tenant={t} event={e} attempts={a}: {err}",
            id=entry.id,
            t=entry.tenant_id,
            e=entry.event_name,
            a=entry.attempt_count,
            err=entry.last_error,
        )
        return
    logger.warning(
        "Outbox delivery failed id={id} attempts={a} next_retry_at={n}: {err}",
        id=entry.id,
        a=entry.attempt_count,
        n=entry.next_retry_at,
        err=entry.last_error,
    )


class InMemoryOutboxStore:
    """Outbox в памяти процесса (offline/demo режим и тесты).

    Событие и бизнес-изменение в этом режиме живут в одном процессе,
    поэтому атомарность append обеспечивается блокировкой.
    """

    def __init__(self, clock: Clock, max_attempts: int = MAX_ATTEMPTS) -> None:
        self.clock = clock
        self.max_attempts = max_attempts
        self._lock = threading.Lock()
        self._events: dict[str, OutboxEntry] = {}

    async def append(self, tenant_id: str, event_name: str, payload: dict) -> str:
        return self.append_nowait(tenant_id, event_name, payload)

    def append_nowait(self, tenant_id: str, event_name: str, payload: dict) -> str:
        """Синхронный append (для producer'ов, которым нужна атомарность без await)."""

        entry = OutboxEntry(
            id=str(uuid4()),
            tenant_id=tenant_id,
            event_name=event_name,
            payload=dict(payload),
            created_at=self.clock.now(),
        )
        with self._lock:
            self._events[entry.id] = entry
        logger.info(
            "Outbox event enqueued id={id} tenant={t} event={e}",
            id=entry.id,
            t=tenant_id,
            e=event_name,
        )
        return entry.id

    def _sorted(self, entries) -> list[OutboxEntry]:
        # sorted() стабилен: при равном created_at сохраняется порядок вставки
        return sorted(entries, key=lambda item: item.created_at)

    async def due_events(self, limit: int) -> list[OutboxEntry]:
        now = self.clock.now()
        with self._lock:
            due = [e for e in self._events.values() if e.is_due(now, self.max_attempts)]
            return [replace(e) for e in self._sorted(due)[:limit]]

    async def mark_delivered(self, event_id: str) -> None:
        with self._lock:
            entry = self._events.get(event_id)
            if entry is None:
                logger.warning("Outbox mark_delivered: unknown id={id}", id=event_id)
                return
            if entry.delivered_at is not None:
                return
            entry.delivered_at = self.clock.now()
            entry.last_error = None
            entry.next_retry_at = None

    async def mark_failed(self, event_id: str, error: str) -> OutboxEntry | None:
        now = self.clock.now()
        with self._lock:
            entry = self._events.get(event_id)
            if entry is None:
                logger.warning("Outbox mark_failed: unknown id={id}", id=event_id)
                return None
            if entry.delivered_at is not None:
                return replace(entry)
            delay = retry_delay_seconds(entry.attempt_count, self.max_attempts)
            entry.attempt_count += 1
            entry.last_error = error
            if delay is None or entry.attempt_count >= self.max_attempts:
                entry.next_retry_at = None
            else:
                entry.next_retry_at = now + timedelta(seconds=delay)
            snapshot = replace(entry)
        _log_failure(snapshot, self.max_attempts)
        return snapshot

    async def get(self, event_id: str) -> OutboxEntry | None:
        with self._lock:
            entry = self._events.get(event_id)
            return replace(entry) if entry is not None else None

    async def list_pending(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]:
        now = self.clock.now()
        with self._lock:
            due = [
                e
                for e in self._events.values()
                if e.is_due(now, self.max_attempts)
                and (tenant_id is None or e.tenant_id == tenant_id)
            ]
            return [replace(e) for e in self._sorted(due)[:limit]]

    async def list_exhausted(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]:
        with self._lock:
            failed = [
                e
                for e in self._events.values()
                if e.is_exhausted(self.max_attempts)
                and (tenant_id is None or e.tenant_id == tenant_id)
            ]
            return [replace(e) for e in self._sorted(failed)[:limit]]

    async def stats(self, tenant_id: str | None = None) -> OutboxStats:
        with self._lock:
            entries = [
                e
                for e in self._events.values()
                if tenant_id is None or e.tenant_id == tenant_id
            ]
        delivered = sum(1 for e in entries if e.delivered_at is not None)
        failed = sum(1 for e in entries if e.is_exhausted(self.max_attempts))
        return OutboxStats(
            total=len(entries),
            delivered=delivered,
            pending=len(entries) - delivered - failed,
            failed=failed,
        )


def add_outbox_event(
    db: AsyncSession,
    *,
    tenant_id: str,
    event_name: str,
    payload: dict,
    created_at: datetime,
) -> OutboxEvent:
    """Добавить outbox событие в текущую транзакцию.

    Parameters
    ----------
    db : sqlalchemy.ext.asyncio.AsyncSession
        Async сессия БД, в которой выполняется бизнес-операция.
    tenant_id : str
        Организация.
    event_name : str
        Имя события.
    payload : dict
        Полезная нагрузка.
    created_at : datetime
        Время создания (из `Clock`).

    Returns
    -------
    OutboxEvent
        Созданная запись outbox (будет сохранена при commit вызывающего).
    """

    event = OutboxEvent(
        id=str(uuid4()),
        tenant_id=tenant_id,
        event_name=event_name,
        payload=payload,
        created_at=created_at,
        attempt_count=0,
        next_retry_at=None,
    )
    db.add(event)
    return event


def _to_entry(row: OutboxEvent) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        event_name=row.event_name,
        payload=dict(row.payload or {}),
        created_at=ensure_utc(row.created_at),
        delivered_at=ensure_utc(row.delivered_at),
        attempt_count=int(row.attempt_count),
        last_error=row.last_error,
        next_retry_at=ensure_utc(row.next_retry_at),
    )


class SqlOutboxStore:
    """Outbox в БД (таблица `notifications_outbox`).

    Parameters
    ----------
    session_factory : async_sessionmaker
        Фабрика async сессий.
    clock : Clock
        Источник времени.
    max_attempts : int, default=8
        Предел попыток доставки.
    lease_seconds : int | None
        Если задан, `due_events` "берёт в работу" события: блокирует строки
        (`FOR UPDATE SKIP LOCKED` на Postgres) и сдвигает `next_retry_at`
        на время lease, чтобы параллельные worker'ы не получили одно событие.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
        max_attempts: int = MAX_ATTEMPTS,
        lease_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds

    def _due_filter(self, stmt, now: datetime):
        return (
            stmt.where(OutboxEvent.delivered_at.is_(None))
            .where(OutboxEvent.attempt_count < self.max_attempts)
            .where(
                or_(
                    OutboxEvent.next_retry_at.is_(None),
                    OutboxEvent.next_retry_at <= now,
                )
            )
        )

    async def append(self, tenant_id: str, event_name: str, payload: dict) -> str:
        try:
            async with self.session_factory() as db:
                event = add_outbox_event(
                    db,
                    tenant_id=tenant_id,
                    event_name=event_name,
                    payload=payload,
                    created_at=self.clock.now(),
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to enqueue event: {exc}") from exc
        logger.info(
            "Outbox event enqueued id={id} tenant={t} event={e}",
            id=event.id,
            t=tenant_id,
            e=event_name,
        )
        return event.id

    async def due_events(self, limit: int) -> list[OutboxEntry]:
        now = self.clock.now()
        stmt = self._due_filter(select(OutboxEvent), now).order_by(
            OutboxEvent.created_at.asc(),
        )
        stmt = stmt.limit(limit)
        try:
            async with self.session_factory() as db:
                if self.lease_seconds is None:
                    result = await db.execute(stmt)
                    return [_to_entry(row) for row in result.scalars().all()]

                result = await db.execute(stmt.with_for_update(skip_locked=True))
                candidates = [_to_entry(row) for row in result.scalars().all()]
                lease_until = now + timedelta(seconds=self.lease_seconds)
                leased: list[OutboxEntry] = []
                for entry in candidates:
                    # условный UPDATE: строку получает только тот, кто первым сдвинул
                    # next_retry_at (SQLite игнорирует FOR UPDATE)
                    claim = self._due_filter(
                        update(OutboxEvent).where(OutboxEvent.id == entry.id),
                        now,
                    ).values(next_retry_at=lease_until)
                    claimed = await db.execute(
                        claim.execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount == 1:
                        leased.append(entry)
                await db.commit()
                if len(leased) < len(candidates):
                    logger.info(
                        "Outbox lease skipped {n} events taken by another worker",
                        n=len(candidates) - len(leased),
                    )
                return leased
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to read due events: {exc}") from exc

    async def mark_delivered(self, event_id: str) -> None:
        try:
            async with self.session_factory() as db:
                row = await db.get(OutboxEvent, event_id, with_for_update=True)
                if row is None:
                    logger.warning("Outbox mark_delivered: unknown id={id}", id=event_id)
                    return
                if row.delivered_at is not None:
                    return
                row.delivered_at = self.clock.now()
                row.last_error = None
                row.next_retry_at = None
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to mark event delivered: {exc}") from exc

    async def mark_failed(self, event_id: str, error: str) -> OutboxEntry | None:
        now = self.clock.now()
        try:
            async with self.session_factory() as db:
                row = await db.get(OutboxEvent, event_id, with_for_update=True)
                if row is None:
                    logger.warning("Outbox mark_failed: unknown id={id}", id=event_id)
                    return None
                if row.delivered_at is not None:
                    return _to_entry(row)
                attempts = int(row.attempt_count)
                delay = retry_delay_seconds(attempts, self.max_attempts)
                row.attempt_count = attempts + 1
                row.last_error = error
                if delay is None or row.attempt_count >= self.max_attempts:
                    row.next_retry_at = None
                else:
                    row.next_retry_at = now + timedelta(seconds=delay)
                await db.commit()
                entry = _to_entry(row)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to record delivery failure: {exc}") from exc
        _log_failure(entry, self.max_attempts)
        return entry

    async def get(self, event_id: str) -> OutboxEntry | None:
        try:
            async with self.session_factory() as db:
                row = await db.get(OutboxEvent, event_id)
                return _to_entry(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to read event: {exc}") from exc

    async def list_pending(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]:
        stmt = self._due_filter(select(OutboxEvent), self.clock.now())
        if tenant_id is not None:
            stmt = stmt.where(OutboxEvent.tenant_id == tenant_id)
        stmt = stmt.order_by(OutboxEvent.created_at.asc()).limit(limit)
        return await self._fetch(stmt)

    async def list_exhausted(
        self,
        tenant_id: str | None = None,
        limit: int = 50,
    ) -> list[OutboxEntry]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.delivered_at.is_(None))
            .where(OutboxEvent.attempt_count >= self.max_attempts)
        )
        if tenant_id is not None:
            stmt = stmt.where(OutboxEvent.tenant_id == tenant_id)
        stmt = stmt.order_by(OutboxEvent.created_at.asc()).limit(limit)
        return await self._fetch(stmt)

    async def stats(self, tenant_id: str | None = None) -> OutboxStats:
        def _count(*conditions):
            stmt = select(func.count()).select_from(OutboxEvent)
            if tenant_id is not None:
                stmt = stmt.where(OutboxEvent.tenant_id == tenant_id)
            for condition in conditions:
                stmt = stmt.where(condition)
            return stmt

        try:
            async with self.session_factory() as db:
                total = (await db.execute(_count())).scalar_one()
                delivered = (
                    await db.execute(_count(OutboxEvent.delivered_at.is_not(None)))
                ).scalar_one()
                failed = (
                    await db.execute(
                        _count(
                            OutboxEvent.delivered_at.is_(None),
                            OutboxEvent.attempt_count >= self.max_attempts,
                        )
                    )
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to read outbox stats: {exc}") from exc
        return OutboxStats(
            total=int(total),
            delivered=int(delivered),
            pending=int(total) - int(delivered) - int(failed),
            failed=int(failed),
        )

    async def _fetch(self, stmt) -> list[OutboxEntry]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                return [_to_entry(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to read outbox: {exc}") from exc
