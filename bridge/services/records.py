"""Бизнес-логика записей (пример producer'а outbox событий).

Создание записи и событие `record_created` фиксируются в одной единице
работы: в SQL режиме это одна транзакция, в memory режиме одна
критическая секция.
"""

from __future__ import annotations

import threading
from typing import Protocol
from uuid import uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bridge.core.clock import Clock, ensure_utc
from bridge.core.errors import StorageUnavailable
from bridge.models.record import Record
from bridge.schemas.records import RecordCreate, RecordOut
from bridge.services.automation import record_event_payload
from bridge.services.outbox import InMemoryOutboxStore, add_outbox_event


class RecordService(Protocol):
    async def create_record(
        self,
        tenant_id: str,
        user_id: str,
        data: RecordCreate,
    ) -> RecordOut: ...

    async def list_records(self, tenant_id: str, limit: int = 50) -> list[RecordOut]: ...


class InMemoryRecordService:
    """Записи в памяти; событие пишется в тот же процессный outbox."""

    def __init__(self, outbox: InMemoryOutboxStore, clock: Clock) -> None:
        self.outbox = outbox
        self.clock = clock
        self._lock = threading.Lock()
        self._records: list[RecordOut] = []

    async def create_record(
        self,
        tenant_id: str,
        user_id: str,
        data: RecordCreate,
    ) -> RecordOut:
        record = RecordOut(
            id=str(uuid4()),
            tenant_id=tenant_id,
            name=data.name,
            record_type=data.record_type,
            data=dict(data.data),
            created_by=user_id,
            created_at=self.clock.now(),
        )
        with self._lock:
            self._records.append(record)
            self.outbox.append_nowait(
                tenant_id,
                "record_created",
                record_event_payload("record_created", record.id, record.record_type),
            )
        logger.info("Record created id={id} tenant={t}", id=record.id, t=tenant_id)
        return record

    async def list_records(self, tenant_id: str, limit: int = 50) -> list[RecordOut]:
        with self._lock:
            items = [r for r in self._records if r.tenant_id == tenant_id]
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items[:limit]


def _to_out(row: Record) -> RecordOut:
    out = RecordOut.model_validate(row)
    return out.model_copy(update={"created_at": ensure_utc(out.created_at)})


class SqlRecordService:
    """Записи в БД; outbox событие добавляется в ту же транзакцию."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def create_record(
        self,
        tenant_id: str,
        user_id: str,
        data: RecordCreate,
    ) -> RecordOut:
        """Создать запись и событие `record_created`.

        Parameters
        ----------
        tenant_id : str
            Организация.
        user_id : str
            Автор записи.
        data : RecordCreate
            Данные записи.

        Returns
        -------
        RecordOut
            Созданная запись.
        """

        now = self.clock.now()
        try:
            async with self.session_factory() as db:
                record = Record(
                    id=str(uuid4()),
                    tenant_id=tenant_id,
                    name=data.name,
                    record_type=data.record_type,
                    data=dict(data.data),
                    created_by=user_id,
                    created_at=now,
                )
                db.add(record)
                add_outbox_event(
                    db,
                    tenant_id=tenant_id,
                    event_name="record_created",
                    payload=record_event_payload(
                        "record_created",
                        record.id,
                        record.record_type,
                    ),
                    created_at=now,
                )
                await db.commit()
                out = _to_out(record)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to create record: {exc}") from exc
        logger.info("Record created id={id} tenant={t}", id=out.id, t=tenant_id)
        return out

    async def list_records(self, tenant_id: str, limit: int = 50) -> list[RecordOut]:
        stmt = (
            select(Record)
            .where(Record.tenant_id == tenant_id)
            .order_by(Record.created_at.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                return [_to_out(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to list records: {exc}") from exc
