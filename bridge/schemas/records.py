"""Схемы для записей."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RecordCreate(BaseModel):
    """Запрос на создание записи.

    Attributes
    ----------
    name : str
        Название (непустое).
    record_type : str
        Тип записи.
    data : dict
        Произвольные поля.
    """

    name: str = Field(min_length=1, max_length=255)
    record_type: str = Field("generic", min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)


class RecordOut(BaseModel):
    """Ответ с данными записи."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    record_type: str
    data: dict[str, Any]
    created_by: str
    created_at: datetime


class RecordList(BaseModel):
    records: list[RecordOut]
    count: int
