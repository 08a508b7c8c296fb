"""Обработчики ошибок приложения.

Формат ответа: `{"error": {"code", "message", "details"}}`.
"""

from __future__ import annotations

import math

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from bridge.core.errors import BridgeError, RateLimitExceeded, StorageUnavailable


def error_response(exc: BridgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def _bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    return error_response(exc)


async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = error_response(exc)
    response.headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    response.headers["X-RateLimit-Limit"] = str(exc.limit)
    response.headers["X-RateLimit-Remaining"] = "0"
    return response


async def _storage_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    logger.error(
        "Storage unavailable path={p}: {err}",
        p=request.url.path,
        err=exc.message,
    )
    return error_response(exc)


def install_error_handlers(app: FastAPI) -> None:
    """Зарегистрировать обработчики ошибок `BridgeError`."""

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    app.add_exception_handler(StorageUnavailable, _storage_handler)
    app.add_exception_handler(BridgeError, _bridge_error_handler)
