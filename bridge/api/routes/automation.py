"""Процедуры Automation Bridge (очередь событий и доставка)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from bridge.api.deps import Identity, get_container, get_identity
from bridge.api.procedure import run_procedure
from bridge.schemas.automation import (
    DeliveryTickOut,
    EventEnqueue,
    EventEnqueued,
    EventList,
    OutboxEventOut,
    StatsOut,
    SweepOut,
)
from bridge.services.automation import emit_automation_event

router = APIRouter(prefix="/automation", tags=["automation"])


@router.post("/events", response_model=EventEnqueued, status_code=status.HTTP_201_CREATED)
async def enqueue_event(
    payload: EventEnqueue,
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Поставить событие в очередь доставки (`automation.enqueue`).

    Parameters
    ----------
    payload : EventEnqueue
        Имя события и полезная нагрузка.

    Returns
    -------
    EventEnqueued
        Id события в outbox.
    """

    container = get_container(request)

    async def handler() -> EventEnqueued:
        event_id = await emit_automation_event(
            container.outbox,
            identity.tenant_id,
            payload.event,
            payload.payload,
        )
        return EventEnqueued(event_id=event_id)

    return await run_procedure(
        request,
        identity,
        "automation.enqueue",
        handler,
        mutation=True,
        status_code=status.HTTP_201_CREATED,
    )


@router.post("/deliveries", response_model=DeliveryTickOut)
async def run_delivery_tick(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Запустить один проход доставки (`automation.runDeliveryTick`)."""

    container = get_container(request)

    async def handler() -> DeliveryTickOut:
        result = await container.delivery_worker.run_tick()
        return DeliveryTickOut(
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
            exhausted=result.exhausted,
            skipped=result.skipped,
            duration_ms=result.duration_ms,
            message=(
                f"Processed {result.processed} events "
                f"({result.successful} successful, {result.failed} failed)"
            ),
        )

    return await run_procedure(
        request,
        identity,
        "automation.runDeliveryTick",
        handler,
        mutation=True,
    )


@router.get("/events/pending", response_model=EventList)
async def list_pending(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """События, ожидающие доставки (`automation.listPending`)."""

    container = get_container(request)

    async def handler() -> EventList:
        entries = await container.outbox.list_pending(identity.tenant_id, limit)
        events = [OutboxEventOut.model_validate(entry) for entry in entries]
        return EventList(events=events, count=len(events))

    return await run_procedure(
        request,
        identity,
        "automation.listPending",
        handler,
        mutation=False,
    )


@router.get("/events/failed", response_model=EventList)
async def list_failed(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """События, исчерпавшие попытки доставки (`automation.listFailed`)."""

    container = get_container(request)

    async def handler() -> EventList:
        entries = await container.outbox.list_exhausted(identity.tenant_id, limit)
        events = [OutboxEventOut.model_validate(entry) for entry in entries]
        return EventList(events=events, count=len(events))

    return await run_procedure(
        request,
        identity,
        "automation.listFailed",
        handler,
        mutation=False,
    )


@router.get("/stats", response_model=StatsOut)
async def get_stats(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Статистика доставки организации (`automation.getStats`)."""

    container = get_container(request)

    async def handler() -> StatsOut:
        stats = await container.outbox.stats(identity.tenant_id)
        return StatsOut(
            total_events=stats.total,
            delivered_events=stats.delivered,
            pending_events=stats.pending,
            failed_events=stats.failed,
            delivery_rate=round(stats.delivery_rate, 2),
        )

    return await run_procedure(
        request,
        identity,
        "automation.getStats",
        handler,
        mutation=False,
    )


@router.post("/sweep", response_model=SweepOut)
async def sweep(
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Очистить просроченные ключи и bucket'ы (`automation.sweep`)."""

    container = get_container(request)

    async def handler() -> SweepOut:
        return SweepOut(**await container.sweep())

    return await run_procedure(
        request,
        identity,
        "automation.sweep",
        handler,
        mutation=True,
    )
