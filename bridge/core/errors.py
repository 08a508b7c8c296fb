"""Иерархия ошибок reliability-слоя.

Каждая ошибка знает свой HTTP статус и код, обработчики FastAPI
(`bridge.api.errors`) превращают их в единый JSON-ответ.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Базовая ошибка приложения."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class StorageUnavailable(BridgeError):
    """Хранилище (БД/Redis) недоступно.

    Не ретраится внутри сервиса: клиент сам повторит запрос.
    """

    status_code = 503
    code = "storage_unavailable"


class IdempotencyConflict(BridgeError):
    """Ключ идемпотентности переиспользован для другого запроса."""

    status_code = 409
    code = "idempotency_conflict"


class IdempotencyInProgress(BridgeError):
    """Запрос с этим ключом ещё выполняется в другом процессе."""

    status_code = 409
    code = "idempotency_in_progress"


class RateLimitExceeded(BridgeError):
    """Превышен лимит запросов.

    Attributes
    ----------
    limit : int
        Ёмкость bucket'а.
    remaining : int
        Остаток токенов (всегда 0).
    retry_after : float
        Через сколько секунд появится токен.
    """

    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, *, limit: int, retry_after: float) -> None:
        super().__init__(
            "rate limit exceeded",
            limit=limit,
            remaining=0,
            retry_after=retry_after,
        )
        self.limit = limit
        self.remaining = 0
        self.retry_after = retry_after


class DeliveryFailed(BridgeError):
    """Неудачная попытка доставки события (сеть, таймаут, не-2xx).

    Никогда не выходит за пределы delivery tick: фиксируется в outbox
    через `mark_failed`.
    """

    code = "delivery_failed"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.response_status = status_code
