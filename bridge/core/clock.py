"""Источник времени.

Все компоненты берут время только через `Clock`, чтобы в тестах можно было
подставить управляемые часы и проверять backoff/TTL/token bucket без sleep.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Абстракция часов."""

    def now(self) -> datetime:
        """Вернуть текущее время (timezone-aware, UTC)."""

    def monotonic(self) -> float:
        """Вернуть монотонное время в секундах."""


class SystemClock:
    """Часы на основе stdlib."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Привести datetime к UTC.

    Notes
    -----
    SQLite (в тестах) возвращает naive datetime даже для
    `DateTime(timezone=True)`; все значения в БД пишутся в UTC.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
