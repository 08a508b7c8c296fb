"""HTTP адаптер процедур: gateway -> `JSONResponse` с заголовками."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from bridge.api.deps import Identity, build_call_context, get_container
from bridge.core.gateway import GatewayResult
from bridge.services.idempotency import IDEMPOTENCY_HEADER, ProcedureResult


def gateway_headers(result: GatewayResult) -> dict[str, str]:
    headers: dict[str, str] = {}
    if result.rate_limit is not None:
        headers["X-RateLimit-Limit"] = str(result.rate_limit.limit)
        headers["X-RateLimit-Remaining"] = str(result.rate_limit.remaining)
    if result.from_cache:
        headers["Idempotent-Replayed"] = "true"
        if result.idempotency_key:
            headers[f"X-{IDEMPOTENCY_HEADER}"] = result.idempotency_key
    return headers


async def run_procedure(
    request: Request,
    identity: Identity,
    procedure: str,
    handler: Callable[[], Awaitable[Any]],
    *,
    mutation: bool,
    status_code: int = 200,
) -> JSONResponse:
    """Выполнить процедуру через `MutationGateway`.

    Parameters
    ----------
    request : fastapi.Request
        Входящий запрос.
    identity : Identity
        Tenant и user.
    procedure : str
        Имя процедуры (ключ политики rate limit).
    handler : Callable[[], Awaitable[Any]]
        Процедура; возвращает JSON-совместимое значение или pydantic модель.
    mutation : bool
        Меняет ли процедура состояние.
    status_code : int, default=200
        Статус успешного ответа.

    Returns
    -------
    fastapi.responses.JSONResponse
        Ответ (возможно, из кэша идемпотентности).
    """

    container = get_container(request)
    ctx = await build_call_context(request, identity, procedure)

    async def exec() -> ProcedureResult:
        value = await handler()
        return ProcedureResult(status_code, jsonable_encoder(value))

    result = await container.gateway.handle(ctx, exec, mutation=mutation)
    return JSONResponse(
        status_code=result.status,
        content=result.body,
        headers=gateway_headers(result),
    )
