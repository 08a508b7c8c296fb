"""Модель outbox событий для надёжной доставки в webhook (Automation Bridge).

Назначение
----------
Outbox позволяет не терять события, когда downstream webhook временно недоступен.
Событие записывается в БД в одной транзакции с бизнес-операцией (например,
созданием записи), а delivery worker доставляет события с ретраями.
"""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from bridge.db.base import Base


def _default_uuid() -> str:
    """Сгенерировать UUID в строковом виде."""

    return str(uuid4())


class OutboxEvent(Base):
    """Outbox событие.

    Attributes
    ----------
    id : str
        UUID события.
    tenant_id : str
        Организация, к которой относится событие.
    event_name : str
        Имя события (например, `record_created`).
    payload : dict
        Полезная нагрузка события (JSON).
    created_at : datetime
        Дата создания записи.
    delivered_at : datetime | None
        Дата успешной доставки (терминальное состояние).
    attempt_count : int
        Количество неудачных попыток доставки.
    last_error : str | None
        Последняя ошибка доставки.
    next_retry_at : datetime | None
        Не раньше этого момента событие можно доставлять снова
        (None: можно сейчас).
    """

    __tablename__ = "notifications_outbox"
    __table_args__ = (
        Index(
            "ix_notifications_outbox_due",
            "delivered_at",
            "next_retry_at",
            "created_at",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_default_uuid,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
