"""Mutation gateway: rate limit -> идемпотентность -> процедура.

Каждый вызов процедуры проходит через `MutationGateway.handle`:

1) проверка rate limit (отказ -> `RateLimitExceeded`);
2) запросы на чтение и мутации без ключа идемпотентности выполняются сразу;
3) мутации с ключом идут через `IdempotencyService.get_or_execute`.

Клиентские ошибки процедуры (`HTTPException` со статусом < 500)
сохраняются как обычный ответ: повтор с тем же ключом вернёт ту же ошибку.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from fastapi import HTTPException
from loguru import logger

from bridge.core.errors import RateLimitExceeded
from bridge.core.rate_limit_policy import PolicyTable, bucket_key
from bridge.core.rate_limiter import Limiter, RateLimitDecision
from bridge.services.idempotency import (
    IdempotencyScope,
    IdempotencyService,
    ProcedureResult,
    derive_idempotency_key,
    hash_request,
    scoped_key,
)

Procedure = Callable[[], Awaitable[ProcedureResult]]


@dataclass(frozen=True, slots=True)
class CallContext:
    """Контекст одного вызова процедуры.

    Attributes
    ----------
    procedure : str
        Имя процедуры (`records.createRecord`).
    method : str
        HTTP метод.
    path : str
        Путь запроса.
    tenant_id : str
        Организация.
    user_id : str
        Пользователь (`sub` из JWT).
    client_ip : str
        IP клиента.
    idempotency_key : str | None
        Значение заголовка `Idempotency-Key`.
    body : Any
        Тело запроса (для хэша).
    headers : dict[str, str]
        Заголовки запроса (в хэш попадают только whitelisted).
    """

    procedure: str
    method: str
    path: str
    tenant_id: str
    user_id: str
    client_ip: str
    idempotency_key: str | None = None
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GatewayResult:
    status: int
    body: Any
    from_cache: bool = False
    rate_limit: RateLimitDecision | None = None
    idempotency_key: str | None = None


async def _capture(exec: Procedure) -> ProcedureResult:
    try:
        return await exec()
    except HTTPException as exc:
        if exc.status_code >= 500:
            raise
        return ProcedureResult(exc.status_code, {"detail": exc.detail})


class MutationGateway:
    """Композиция limiter'а и кэша идемпотентности.

    Parameters
    ----------
    limiter : Limiter | None
        Rate limiter; None отключает проверку.
    idempotency : IdempotencyService
        Сервис идемпотентности.
    policies : PolicyTable
        Таблица политик rate limit.
    header_whitelist : list[str]
        Заголовки, входящие в хэш запроса.
    derive_keys : bool, default=False
        Выводить ключ из запроса, если клиент его не прислал.
    """

    def __init__(
        self,
        limiter: Limiter | None,
        idempotency: IdempotencyService,
        policies: PolicyTable,
        *,
        header_whitelist: list[str] | None = None,
        derive_keys: bool = False,
    ) -> None:
        self.limiter = limiter
        self.idempotency = idempotency
        self.policies = policies
        self.header_whitelist = header_whitelist or ["content-type"]
        self.derive_keys = derive_keys

    async def check_rate_limit(self, ctx: CallContext) -> RateLimitDecision | None:
        """Списать токен для вызова.

        Raises
        ------
        RateLimitExceeded
            Если bucket пуст.
        """

        if self.limiter is None:
            return None
        policy = self.policies.resolve(ctx.procedure, ctx.method)
        decision = await self.limiter.admit(
            bucket_key(ctx.client_ip, ctx.tenant_id, ctx.procedure),
            policy.limit,
            policy.window_seconds,
        )
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded procedure={p} tenant={t} ip={ip} retry_after={r:.2f}",
                p=ctx.procedure,
                t=ctx.tenant_id,
                ip=ctx.client_ip,
                r=decision.retry_after,
            )
            raise RateLimitExceeded(limit=decision.limit, retry_after=decision.retry_after)
        return decision

    def _resolve_key(self, ctx: CallContext) -> str | None:
        if ctx.idempotency_key:
            return ctx.idempotency_key
        if self.derive_keys:
            return derive_idempotency_key(
                ctx.method,
                ctx.path,
                ctx.tenant_id,
                ctx.user_id,
                ctx.body,
            )
        return None

    async def handle(
        self,
        ctx: CallContext,
        exec: Procedure,
        *,
        mutation: bool,
    ) -> GatewayResult:
        """Выполнить процедуру через цепочку gateway.

        Parameters
        ----------
        ctx : CallContext
            Контекст вызова.
        exec : Callable[[], Awaitable[ProcedureResult]]
            Процедура (получает вход без изменений через замыкание).
        mutation : bool
            True для процедур, меняющих состояние.

        Returns
        -------
        GatewayResult
            Статус, тело и метаданные для заголовков ответа.
        """

        decision = await self.check_rate_limit(ctx)

        key = self._resolve_key(ctx) if mutation else None
        if key is None:
            result = await _capture(exec)
            return GatewayResult(result.status, result.body, rate_limit=decision)

        request_hash = hash_request(
            ctx.body,
            ctx.headers,
            self.header_whitelist,
            ctx.method,
            ctx.path,
        )
        result, from_cache = await self.idempotency.get_or_execute(
            scoped_key(ctx.tenant_id, ctx.user_id, key),
            request_hash,
            lambda: _capture(exec),
            scope=IdempotencyScope(
                method=ctx.method,
                path=ctx.path,
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
            ),
        )
        return GatewayResult(
            result.status,
            result.body,
            from_cache=from_cache,
            rate_limit=decision,
            idempotency_key=key,
        )
