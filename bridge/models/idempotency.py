"""Модель ключей идемпотентности."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from bridge.db.base import Base


class IdempotencyKey(Base):
    """Сохранённый результат мутации для ключа идемпотентности.

    Первичный ключ по `key` гарантирует не более одной записи на ключ:
    вставка claim'а есть атомарная операция "кто первый".

    Attributes
    ----------
    key : str
        Ключ (scoped: tenant + user + клиентский ключ).
    request_hash : str
        SHA-256 каноничного тела и whitelisted заголовков.
    completed : bool
        False, пока процедура выполняется (claim), True после сохранения ответа.
    response_status : int | None
        HTTP статус ответа.
    response_body : dict | list | None
        Тело ответа (JSON).
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    completed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[dict | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
