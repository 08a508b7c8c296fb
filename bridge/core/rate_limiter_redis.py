"""Rate limiting в Redis (Token Bucket через Lua).

Notes
-----
Подходит для нескольких процессов/реплик, так как состояние хранится в Redis.
Скрипт выполняется атомарно, поэтому отдельная блокировка на ключ не нужна.
Если Redis недоступен, ошибка поднимается как `StorageUnavailable` (503):
молча пропускать запросы без лимита нельзя.
"""

from __future__ import annotations

import math

from redis.asyncio import Redis
from redis.exceptions import RedisError

from bridge.core.clock import Clock, SystemClock
from bridge.core.errors import StorageUnavailable
from bridge.core.rate_limiter import RateLimitDecision, _validate

_LUA_TOKEN_BUCKET = r"""
-- KEYS[1] = bucket key
-- ARGV[1] = capacity
-- ARGV[2] = window (seconds, float)
-- ARGV[3] = now_ts (seconds, float)
-- ARGV[4] = idle ttl (ms)

local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now_ts = tonumber(ARGV[3])
local idle_ttl = tonumber(ARGV[4])
local rate = capacity / window

local data = redis.call("HMGET", key, "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])

if tokens == nil or ts == nil then
  tokens = capacity - 1
  redis.call("HSET", key, "tokens", tokens, "ts", now_ts)
  redis.call("PEXPIRE", key, idle_ttl)
  return {1, tostring(tokens), "0"}
end

local elapsed = now_ts - ts
if elapsed < 0 then
  elapsed = 0
end

local added = elapsed * rate
if added > 0 then
  tokens = math.min(capacity, tokens + added)
  ts = now_ts
end

local allowed = 0
local retry_after = 0
if tokens < 1 then
  retry_after = (1 - tokens) / rate
else
  tokens = tokens - 1
  allowed = 1
end

redis.call("HSET", key, "tokens", tokens, "ts", ts)
redis.call("PEXPIRE", key, idle_ttl)

-- числа Lua усекаются до integer при возврате, поэтому строки
return {allowed, tostring(tokens), tostring(retry_after)}
"""


class RedisRateLimiter:
    """Redis-backed token bucket limiter.

    Parameters
    ----------
    client : redis.asyncio.Redis
        Async клиент Redis.
    clock : Clock | None
        Источник времени (wall clock: общий для всех реплик).
    idle_seconds : float, default=3600
        TTL ключа bucket'а после последнего обращения.
    """

    def __init__(
        self,
        client: Redis,
        clock: Clock | None = None,
        idle_seconds: float = 3600.0,
    ) -> None:
        self.client = client
        self.clock = clock or SystemClock()
        self.idle_seconds = idle_seconds
        self._script = client.register_script(_LUA_TOKEN_BUCKET)

    async def admit(
        self,
        bucket_key: str,
        capacity: int,
        window_seconds: float,
    ) -> RateLimitDecision:
        """Проверить и списать токен (атомарно в Redis)."""

        _validate(capacity, window_seconds)
        now_ts = self.clock.now().timestamp()
        try:
            allowed, tokens, retry_after = await self._script(
                keys=[bucket_key],
                args=[capacity, window_seconds, now_ts, int(self.idle_seconds * 1000)],
            )
        except RedisError as exc:
            raise StorageUnavailable(f"rate limit backend unavailable: {exc}") from exc

        tokens_f = float(tokens)
        if not int(allowed):
            return RateLimitDecision(
                allowed=False,
                limit=capacity,
                remaining=0,
                retry_after=float(retry_after),
            )
        return RateLimitDecision(
            allowed=True,
            limit=capacity,
            remaining=math.floor(tokens_f),
        )

    async def sweep(self) -> int:
        """Ничего не делает: Redis сам удаляет ключи по TTL."""

        return 0
