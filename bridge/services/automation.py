"""Отправка доменных событий в outbox Automation Bridge."""

from __future__ import annotations

from typing import Any

from loguru import logger

from bridge.services.outbox import OutboxStore

RECORD_EVENTS = frozenset({"record_created", "record_updated", "record_deleted"})


async def emit_automation_event(
    outbox: OutboxStore,
    tenant_id: str,
    event_name: str,
    payload: dict[str, Any],
) -> str:
    """Поставить событие в очередь доставки.

    Parameters
    ----------
    outbox : OutboxStore
        Хранилище outbox.
    tenant_id : str
        Организация.
    event_name : str
        Имя события.
    payload : dict
        Полезная нагрузка.

    Returns
    -------
    str
        Id события в outbox.

    Raises
    ------
    StorageUnavailable
        Если outbox недоступен.
    """

    try:
        event_id = await outbox.append(tenant_id, event_name, payload)
    except Exception as exc:
        logger.error(
            "Failed to emit automation event tenant={t} event={e}: {err}",
            t=tenant_id,
            e=event_name,
            err=str(exc),
        )
        raise
    logger.info(
        "Automation event emitted id={id} tenant={t} event={e}",
        id=event_id,
        t=tenant_id,
        e=event_name,
    )
    return event_id


def record_event_payload(
    event_name: str,
    record_id: str,
    record_type: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Payload события записи (`record_created` / `record_updated` / `record_deleted`)."""

    if event_name not in RECORD_EVENTS:
        raise ValueError(f"unknown record event: {event_name}")
    return {
        "record_id": record_id,
        "record_type": record_type,
        "metadata": {"event_type": event_name, **(metadata or {})},
    }
