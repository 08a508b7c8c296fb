"""Схемы процедур Automation Bridge."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventEnqueue(BaseModel):
    """Запрос на постановку события в очередь."""

    event: str = Field(min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)


class EventEnqueued(BaseModel):
    success: bool = True
    event_id: str
    message: str = "Event enqueued for delivery"


class OutboxEventOut(BaseModel):
    """Событие outbox для просмотра оператором."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    event_name: str
    payload: dict[str, Any]
    created_at: datetime
    delivered_at: datetime | None = None
    attempt_count: int
    last_error: str | None = None
    next_retry_at: datetime | None = None


class EventList(BaseModel):
    events: list[OutboxEventOut]
    count: int


class DeliveryTickOut(BaseModel):
    """Итог delivery tick."""

    model_config = ConfigDict(from_attributes=True)

    success: bool = True
    processed: int
    successful: int
    failed: int
    exhausted: int
    skipped: bool
    duration_ms: float
    message: str = ""


class StatsOut(BaseModel):
    """Статистика доставки (проценты округлены до сотых)."""

    total_events: int
    delivered_events: int
    pending_events: int
    failed_events: int
    delivery_rate: float


class SweepOut(BaseModel):
    idempotency_keys: int
    rate_limit_buckets: int
