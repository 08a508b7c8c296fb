"""Идемпотентность мутаций.

Жизненный цикл ключа
--------------------
1) `claim`: атомарная вставка "pending" записи (кто первый, тот исполняет).
2) Процедура выполняется ровно один раз.
3) `complete`: сохраняется статус и тело ответа; повтор с тем же ключом
   и тем же хэшем запроса получает сохранённый ответ.
4) Через TTL (24ч) запись считается отсутствующей и удаляется лениво
   при чтении или периодическим `sweep`.
5) Pending claim старше `claim_timeout_seconds` считается брошенным
   (процесс упал между claim и complete): его может перехватить новый claim.
"""

from __future__ import annotations

import asyncio
import hashlib
import threading
import weakref
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, Protocol

from loguru import logger
from sqlalchemy import and_, delete, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bridge.core.clock import Clock, ensure_utc
from bridge.core.errors import IdempotencyConflict, IdempotencyInProgress, StorageUnavailable
from bridge.db.redis import canonical_json
from bridge.models.idempotency import IdempotencyKey

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_CLAIM_TIMEOUT_SECONDS = 5 * 60
IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass(frozen=True, slots=True)
class ProcedureResult:
    """Результат процедуры, пригодный для кэширования."""

    status: int
    body: Any


@dataclass(frozen=True, slots=True)
class IdempotencyScope:
    """Контекст запроса, к которому привязан ключ."""

    method: str
    path: str
    tenant_id: str
    user_id: str


@dataclass(slots=True)
class IdempotencyRecord:
    key: str
    method: str
    path: str
    tenant_id: str
    user_id: str
    request_hash: str
    created_at: datetime
    completed: bool = False
    response_status: int | None = None
    response_body: Any = None


class IdempotencyStore(Protocol):
    """Атомарные примитивы хранилища ключей."""

    async def get(self, key: str) -> IdempotencyRecord | None: ...

    async def claim(self, record: IdempotencyRecord) -> bool: ...

    async def complete(self, key: str, status: int, body: Any) -> None: ...

    async def release(self, key: str) -> None: ...

    async def sweep(self) -> int: ...


def scoped_key(tenant_id: str, user_id: str, key: str) -> str:
    """Ключ в пространстве организации и пользователя."""

    return f"{tenant_id}:{user_id}:{key}"


def hash_request(
    body: Any,
    headers: Mapping[str, str],
    whitelist: list[str] | tuple[str, ...] = ("content-type",),
    method: str = "",
    path: str = "",
) -> str:
    """Хэш запроса для сравнения повторов.

    Parameters
    ----------
    body : Any
        Тело запроса (JSON-совместимое).
    headers : Mapping[str, str]
        Заголовки запроса.
    whitelist : list[str]
        Заголовки, которые входят в хэш. Инфраструктурные заголовки
        (трейсинг, прокси) меняются между повторами и в хэш не попадают.
    method : str
        HTTP метод.
    path : str
        Путь запроса.

    Returns
    -------
    str
        SHA-256 (hex) каноничной JSON строки.
    """

    allowed = {name.lower() for name in whitelist}
    picked = {
        name.lower(): value
        for name, value in headers.items()
        if name.lower() in allowed
    }
    material = canonical_json(
        {
            "method": method.upper(),
            "path": path,
            "headers": picked,
            "body": body,
        }
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def derive_idempotency_key(
    method: str,
    path: str,
    tenant_id: str,
    user_id: str,
    body: Any = None,
) -> str:
    """Детерминированный ключ для клиентов, не присылающих `Idempotency-Key`."""

    body_part = canonical_json(body) if body is not None else ""
    material = f"{method.upper()}:{path}:{tenant_id}:{user_id}:{body_part}"
    return "idem_" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def _log_abandoned(key: str) -> None:
    logger.warning("Idempotency claim abandoned, key is free again key={key}", key=key)


class _TtlMixin:
    clock: Clock
    ttl_seconds: int
    claim_timeout_seconds: int

    def _expired(self, created_at: datetime, now: datetime | None = None) -> bool:
        now = now or self.clock.now()
        return now - ensure_utc(created_at) > timedelta(seconds=self.ttl_seconds)

    def _stale(self, completed: bool, created_at: datetime, now: datetime | None = None) -> bool:
        """Запись просрочена по TTL или это брошенный pending claim."""

        now = now or self.clock.now()
        if self._expired(created_at, now):
            return True
        if completed:
            return False
        return now - ensure_utc(created_at) > timedelta(seconds=self.claim_timeout_seconds)


class InMemoryIdempotencyStore(_TtlMixin):
    """Ключи идемпотентности в памяти процесса."""

    def __init__(
        self,
        clock: Clock,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self._lock = threading.Lock()
        self._records: dict[str, IdempotencyRecord] = {}

    async def get(self, key: str) -> IdempotencyRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if self._stale(record.completed, record.created_at):
                if not record.completed:
                    _log_abandoned(key)
                del self._records[key]
                return None
            return replace(record)

    async def claim(self, record: IdempotencyRecord) -> bool:
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None and not self._stale(existing.completed, existing.created_at):
                return False
            if existing is not None and not existing.completed:
                _log_abandoned(record.key)
            self._records[record.key] = replace(record, completed=False)
            return True

    async def complete(self, key: str, status: int, body: Any) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                logger.warning("Idempotency complete: claim lost key={key}", key=key)
                return
            record.completed = True
            record.response_status = status
            record.response_body = body

    async def release(self, key: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None and not record.completed:
                del self._records[key]

    async def sweep(self) -> int:
        now = self.clock.now()
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if self._stale(record.completed, record.created_at, now)
            ]
            for key in expired:
                del self._records[key]
        return len(expired)


def _to_record(row: IdempotencyKey) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row.key,
        method=row.method,
        path=row.path,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        request_hash=row.request_hash,
        created_at=ensure_utc(row.created_at),
        completed=bool(row.completed),
        response_status=row.response_status,
        response_body=row.response_body,
    )


class SqlIdempotencyStore(_TtlMixin):
    """Ключи идемпотентности в БД (таблица `idempotency_keys`).

    Атомарность claim'а обеспечивает первичный ключ: из двух конкурентных
    вставок одна получает `IntegrityError`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.claim_timeout_seconds = claim_timeout_seconds

    async def get(self, key: str) -> IdempotencyRecord | None:
        try:
            async with self.session_factory() as db:
                row = await db.get(IdempotencyKey, key)
                if row is None:
                    return None
                if self._stale(bool(row.completed), row.created_at):
                    if not row.completed:
                        _log_abandoned(key)
                    await db.delete(row)
                    await db.commit()
                    return None
                return _to_record(row)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to read idempotency key: {exc}") from exc

    async def claim(self, record: IdempotencyRecord) -> bool:
        try:
            async with self.session_factory() as db:
                existing = await db.get(IdempotencyKey, record.key)
                if existing is not None:
                    if not self._stale(bool(existing.completed), existing.created_at):
                        return False
                    if not existing.completed:
                        _log_abandoned(record.key)
                    await db.delete(existing)
                    await db.flush()
                db.add(
                    IdempotencyKey(
                        key=record.key,
                        method=record.method,
                        path=record.path,
                        tenant_id=record.tenant_id,
                        user_id=record.user_id,
                        request_hash=record.request_hash,
                        completed=False,
                        created_at=record.created_at,
                    )
                )
                await db.commit()
                return True
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to claim idempotency key: {exc}") from exc

    async def complete(self, key: str, status: int, body: Any) -> None:
        try:
            async with self.session_factory() as db:
                row = await db.get(IdempotencyKey, key)
                if row is None:
                    logger.warning("Idempotency complete: claim lost key={key}", key=key)
                    return
                row.completed = True
                row.response_status = status
                row.response_body = body
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to store idempotent response: {exc}") from exc

    async def release(self, key: str) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    delete(IdempotencyKey)
                    .where(IdempotencyKey.key == key)
                    .where(IdempotencyKey.completed.is_(False))
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to release idempotency key: {exc}") from exc

    async def sweep(self) -> int:
        now = self.clock.now()
        cutoff = now - timedelta(seconds=self.ttl_seconds)
        claim_cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    delete(IdempotencyKey).where(
                        or_(
                            IdempotencyKey.created_at < cutoff,
                            and_(
                                IdempotencyKey.completed.is_(False),
                                IdempotencyKey.created_at < claim_cutoff,
                            ),
                        )
                    )
                )
                await db.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"failed to sweep idempotency keys: {exc}") from exc


class IdempotencyService:
    """Кэш результатов мутаций по ключу идемпотентности.

    Parameters
    ----------
    store : IdempotencyStore
        Хранилище (memory или SQL).
    clock : Clock
        Источник времени.

    Notes
    -----
    Внутри процесса вызовы с одним ключом сериализуются `asyncio.Lock`'ом:
    второй конкурентный запрос дожидается первого и получает его ответ.
    Между процессами at-most-once обеспечивает атомарный `claim`.
    """

    def __init__(self, store: IdempotencyStore, clock: Clock) -> None:
        self.store = store
        self.clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, key: str) -> IdempotencyRecord | None:
        return await self.store.get(key)

    @staticmethod
    def _replay(record: IdempotencyRecord, request_hash: str) -> tuple[ProcedureResult, bool]:
        if record.request_hash != request_hash:
            raise IdempotencyConflict(
                "idempotency key was reused with a different request",
                key=record.key,
            )
        if not record.completed:
            raise IdempotencyInProgress(
                "request with this idempotency key is still in progress",
                key=record.key,
            )
        logger.info("Idempotent replay key={key}", key=record.key)
        return ProcedureResult(record.response_status or 200, record.response_body), True

    async def get_or_execute(
        self,
        key: str,
        request_hash: str,
        exec: Callable[[], Awaitable[ProcedureResult]],
        *,
        scope: IdempotencyScope,
    ) -> tuple[ProcedureResult, bool]:
        """Выполнить процедуру не более одного раза на ключ.

        Parameters
        ----------
        key : str
            Scoped ключ идемпотентности.
        request_hash : str
            Хэш запроса (`hash_request`).
        exec : Callable[[], Awaitable[ProcedureResult]]
            Процедура.
        scope : IdempotencyScope
            Метод, путь, организация и пользователь запроса.

        Returns
        -------
        tuple[ProcedureResult, bool]
            Результат и признак `from_cache`.

        Raises
        ------
        IdempotencyConflict
            Ключ уже использован для другого запроса.
        IdempotencyInProgress
            Запрос с этим ключом выполняется в другом процессе.
        """

        lock = self._lock_for(key)
        async with lock:
            existing = await self.store.get(key)
            if existing is not None:
                return self._replay(existing, request_hash)

            claimed = await self.store.claim(
                IdempotencyRecord(
                    key=key,
                    method=scope.method,
                    path=scope.path,
                    tenant_id=scope.tenant_id,
                    user_id=scope.user_id,
                    request_hash=request_hash,
                    created_at=self.clock.now(),
                )
            )
            if not claimed:
                existing = await self.store.get(key)
                if existing is None:
                    raise IdempotencyInProgress(
                        "request with this idempotency key is still in progress",
                        key=key,
                    )
                return self._replay(existing, request_hash)

            try:
                result = await exec()
            except BaseException:
                try:
                    await self.store.release(key)
                except StorageUnavailable as exc:
                    # claim освободится сам по claim timeout
                    logger.warning(
                        "Idempotency release failed key={key}: {err}",
                        key=key,
                        err=exc.message,
                    )
                raise

            await self.store.complete(key, result.status, result.body)
            return result, False

    async def sweep(self) -> int:
        removed = await self.store.sweep()
        if removed:
            logger.info("Idempotency keys swept count={n}", n=removed)
        return removed
