"""Rate limiting по алгоритму Token Bucket.

Notes
-----
Реализация безопасна в рамках одного процесса (worker).
В распределённой среде состояние нужно хранить в общем хранилище
(см. `bridge.core.rate_limiter_redis`).

Семантика bucket'а
------------------
- Первый запрос по ключу создаёт bucket с `capacity - 1` токенами.
- Пополнение: `elapsed * capacity / window` токенов, не больше `capacity`.
  Момент пополнения сдвигается только когда что-то добавилось.
- Запрос проходит, если есть хотя бы один целый токен.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Protocol

from bridge.core.clock import Clock, SystemClock


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Решение limiter'а.

    Attributes
    ----------
    allowed : bool
        Пропущен ли запрос.
    limit : int
        Ёмкость bucket'а.
    remaining : int
        Целых токенов после решения.
    retry_after : float
        Через сколько секунд появится токен (0 для пропущенных).
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0


class Limiter(Protocol):
    """Общий контракт memory/Redis limiter'ов."""

    async def admit(
        self,
        bucket_key: str,
        capacity: int,
        window_seconds: float,
    ) -> RateLimitDecision: ...

    async def sweep(self) -> int: ...


def _validate(capacity: int, window_seconds: float) -> None:
    if capacity <= 0:
        raise ValueError("capacity must be positive")
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")


@dataclass
class _Bucket:
    tokens: float
    last_refill_ts: float
    lock: threading.Lock


class RateLimiter:
    """In-memory token bucket limiter.

    Parameters
    ----------
    clock : Clock | None
        Источник монотонного времени.
    idle_seconds : float, default=3600
        Bucket без активности дольше этого времени удаляется в `sweep`.
    """

    def __init__(self, clock: Clock | None = None, idle_seconds: float = 3600.0) -> None:
        self.clock = clock or SystemClock()
        self.idle_seconds = idle_seconds
        # короткая блокировка только на словарь; сам bucket под своим lock'ом
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}

    async def admit(
        self,
        bucket_key: str,
        capacity: int,
        window_seconds: float,
    ) -> RateLimitDecision:
        return self.admit_nowait(bucket_key, capacity, window_seconds)

    def admit_nowait(
        self,
        bucket_key: str,
        capacity: int,
        window_seconds: float,
    ) -> RateLimitDecision:
        """Проверить и списать токен.

        Parameters
        ----------
        bucket_key : str
            Ключ bucket'а (ip + tenant + процедура).
        capacity : int
            Ёмкость (лимит запросов за окно).
        window_seconds : float
            Окно, за которое bucket полностью пополняется.

        Returns
        -------
        RateLimitDecision
            Решение с остатком и временем до следующего токена.
        """

        _validate(capacity, window_seconds)
        rate = capacity / window_seconds
        now = self.clock.monotonic()

        with self._lock:
            bucket = self._buckets.get(bucket_key)
            if bucket is None:
                bucket = _Bucket(
                    tokens=float(capacity - 1),
                    last_refill_ts=now,
                    lock=threading.Lock(),
                )
                self._buckets[bucket_key] = bucket
                return RateLimitDecision(
                    allowed=True,
                    limit=capacity,
                    remaining=capacity - 1,
                )

        with bucket.lock:
            elapsed = max(0.0, now - bucket.last_refill_ts)
            added = elapsed * rate
            if added > 0:
                bucket.tokens = min(float(capacity), bucket.tokens + added)
                bucket.last_refill_ts = now

            if bucket.tokens < 1:
                return RateLimitDecision(
                    allowed=False,
                    limit=capacity,
                    remaining=0,
                    retry_after=(1 - bucket.tokens) / rate,
                )

            bucket.tokens -= 1
            return RateLimitDecision(
                allowed=True,
                limit=capacity,
                remaining=math.floor(bucket.tokens),
            )

    async def sweep(self) -> int:
        """Удалить bucket'ы, не использовавшиеся дольше `idle_seconds`.

        Returns
        -------
        int
            Количество удалённых bucket'ов.
        """

        now = self.clock.monotonic()
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if now - bucket.last_refill_ts > self.idle_seconds
            ]
            for key in stale:
                del self._buckets[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
