"""Модель записи (records), пример бизнес-сущности, порождающей события."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from bridge.db.base import Base


def _default_uuid() -> str:
    return str(uuid4())


class Record(Base):
    """Запись организации.

    Attributes
    ----------
    id : str
        UUID записи.
    tenant_id : str
        Организация-владелец.
    name : str
        Название.
    record_type : str
        Тип записи (например, `contact`).
    data : dict
        Произвольные поля (JSON).
    created_by : str
        Пользователь, создавший запись.
    created_at : datetime
        Дата создания.
    """

    __tablename__ = "records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_default_uuid)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    record_type: Mapped[str] = mapped_column(String(64), nullable=False)

    # JSONB для Postgres, JSON для остальных (например, SQLite в тестах).
    data: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
