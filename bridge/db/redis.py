"""Redis клиент и JSON-хелперы.

Важно
-----
Redis нужен только для распределённого rate limiting и lock'а delivery tick.
Клиент создаётся один раз в composition root (`bridge.container`) и
передаётся в компоненты явно.
"""

from __future__ import annotations

import json

from redis.asyncio import ConnectionPool, Redis

from bridge.core.config import Settings


def create_redis_client(settings: Settings) -> Redis:
    """Создать async Redis клиент (через pool).

    Parameters
    ----------
    settings : Settings
        Настройки приложения.

    Returns
    -------
    redis.asyncio.Redis
        Клиент Redis.
    """

    pool = ConnectionPool(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
        max_connections=20,
    )
    return Redis(connection_pool=pool)


def canonical_json(value: object) -> str:
    """Каноничная JSON строка (стабильный порядок ключей).

    Используется везде, где от строки считается подпись или хэш.
    """

    return json.dumps(
        value,
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    )


def loads_json(value: str) -> object:
    """Десериализовать JSON строку."""

    return json.loads(value)
