"""Точка входа FastAPI приложения."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from bridge.api.errors import install_error_handlers
from bridge.api.router import api_router
from bridge.container import Container, build_container
from bridge.core.config import Settings, get_settings
from bridge.core.logging import setup_logging
from bridge.core.migrations import run_migrations_once


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan приложения.

    Миграции запускаются один раз при старте процесса (если включено),
    для SQLite схема создаётся напрямую из моделей.
    """

    container: Container = app.state.container
    logger.info(
        "Starting {name} env={env} storage={storage}",
        name=container.settings.app_name,
        env=container.settings.app_env,
        storage=container.settings.storage_backend,
    )
    await asyncio.to_thread(run_migrations_once, container.settings)
    await container.prepare()
    yield
    if app.state.owns_container:
        await container.aclose()


def create_app(
    settings: Settings | None = None,
    container: Container | None = None,
) -> FastAPI:
    """Создать и сконфигурировать экземпляр FastAPI.

    Parameters
    ----------
    settings : Settings | None
        Настройки; по умолчанию из окружения.
    container : Container | None
        Готовый контейнер (в тестах); иначе собирается из настроек.

    Returns
    -------
    fastapi.FastAPI
        Сконфигурированное приложение.
    """

    if settings is None:
        settings = container.settings if container is not None else get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.owns_container = container is None
    app.state.container = container or build_container(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_methods_list,
        allow_headers=settings.cors_headers_list,
    )
    install_error_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()


def run() -> None:
    """Запустить API через uvicorn (host и порт из настроек)."""

    settings = get_settings()
    uvicorn.run("bridge.main:app", host=settings.api_host, port=settings.api_port)
