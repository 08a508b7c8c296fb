"""Конфигурация приложения.

Все настройки должны приходить из переменных окружения (опционально через `.env`).
Секреты нельзя хранить в репозитории/коде: используйте `.env` локально и
секрет-менеджер в проде.
"""

from __future__ import annotations

import json
import math
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> list[str]:
    """Разбить строку CSV на список значений.

    Parameters
    ----------
    value : str
        CSV строка.

    Returns
    -------
    list[str]
        Список значений без пробелов.
    """

    if value.strip() == "*":
        return ["*"]
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    """Настройки приложения из переменных окружения.

    Notes
    -----
    В локальной разработке значения могут браться из файла `.env`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field("automation-bridge")
    app_env: str = Field("local")
    log_level: str = Field("INFO")
    log_json: bool = Field(False)

    api_host: str = Field("0.0.0.0")
    api_port: int = Field(8000)

    run_migrations_on_startup: bool = Field(False)
    migrations_wait_tries: int = Field(60, ge=1)
    migrations_wait_sleep_seconds: float = Field(1.0, gt=0)

    secret_key: SecretStr = Field(..., min_length=32)
    algorithm: str = Field("HS256")
    access_token_expire_minutes: int = Field(60, ge=1)

    cors_allow_origins: str = Field("*")
    cors_allow_methods: str = Field("*")
    cors_allow_headers: str = Field("*")
    cors_allow_credentials: bool = Field(False)

    # memory: offline/demo режим, database: SQLAlchemy
    storage_backend: str = Field("memory")

    # Automation Bridge (доставка outbox в webhook)
    automation_webhook_url: str | None = None
    automation_webhook_secret: SecretStr | None = None
    automation_product_name: str = Field("Hikari")

    outbox_max_attempts: int = Field(8, ge=1)
    outbox_batch_size: int = Field(50, ge=1, le=1000)
    outbox_delivery_timeout_seconds: float = Field(30.0, gt=0)
    outbox_delivery_concurrency: int = Field(4, ge=1)
    # None: lease считается из batch/concurrency/timeout (см. effective_outbox_lease_seconds)
    outbox_lease_seconds: int | None = Field(None, ge=1)
    outbox_poll_seconds: float = Field(60.0, gt=0)
    outbox_tick_lock_seconds: int = Field(300, ge=1)

    idempotency_ttl_seconds: int = Field(86400, ge=1)
    # pending claim старше этого считается брошенным (процесс упал до ответа)
    idempotency_claim_timeout_seconds: int = Field(300, ge=1)
    idempotency_header_whitelist: str = Field("content-type")
    idempotency_derive_keys: bool = Field(False)
    idempotency_sweep_seconds: float = Field(3600.0, gt=0)

    rate_limit_enabled: bool = Field(True)
    rate_limit_backend: str = Field("memory")
    rate_limit_default_limit: int = Field(60, ge=1)
    rate_limit_window_ms: int = Field(60000, ge=1)
    rate_limit_write_limit: int = Field(30, ge=1)
    rate_limit_read_limit: int = Field(120, ge=1)
    rate_limit_idle_seconds: int = Field(3600, ge=1)
    # JSON: {"records.createRecord": {"limit": 10, "window_ms": 60000}}
    rate_limit_policies: str = Field("{}")

    # DB settings
    postgres_host: str = "db"
    postgres_port: int = Field(5432, ge=1, le=65535)
    postgres_db: str = "automation_bridge"
    postgres_user: str = "postgres"
    postgres_password: SecretStr | None = None

    # Redis settings
    redis_host: str = "redis"
    redis_port: int = Field(6379, ge=1, le=65535)
    redis_db: int = Field(0, ge=0)

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    database_url: str | None = None
    database_async_url: str | None = None

    @property
    def postgres_dsn(self) -> str:
        """Build PostgreSQL DSN from component settings."""

        if self.postgres_password is None:
            raise ValueError(
                "POSTGRES_PASSWORD is required when DATABASE_URL is not set",
            )
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @field_validator("secret_key")
    @classmethod
    def _validate_secret_key(cls, value: SecretStr) -> SecretStr:
        secret = value.get_secret_value()
        if len(secret.strip()) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return value

    @field_validator("storage_backend", "rate_limit_backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.lower().strip()

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, value: str) -> str:
        if value not in {"memory", "database"}:
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'database'")
        return value

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: str) -> str:
        if value not in {"memory", "redis"}:
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return value

    @field_validator("rate_limit_policies")
    @classmethod
    def _validate_policies_json(cls, value: str) -> str:
        data = json.loads(value or "{}")
        if not isinstance(data, dict):
            raise ValueError("RATE_LIMIT_POLICIES must be a JSON object")
        for name, item in data.items():
            if not isinstance(item, dict) or "limit" not in item:
                raise ValueError(f"policy {name!r} must define 'limit'")
        return value

    @model_validator(mode="after")
    def _require_secret_with_webhook(self) -> Settings:
        if self.automation_webhook_url and self.automation_webhook_secret is None:
            raise ValueError(
                "AUTOMATION_WEBHOOK_SECRET is required when AUTOMATION_WEBHOOK_URL is set",
            )
        return self

    @property
    def redis_dsn(self) -> str:
        """Build Redis DSN from component settings."""

        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def effective_celery_broker_url(self) -> str:
        """Вернуть broker URL для Celery (по умолчанию Redis)."""

        return self.celery_broker_url or self.redis_dsn

    @property
    def effective_celery_result_backend(self) -> str:
        """Вернуть result backend URL для Celery."""

        return self.celery_result_backend or self.redis_dsn

    @property
    def effective_outbox_lease_seconds(self) -> int:
        """Lease SQL outbox: по умолчанию покрывает самый долгий tick с запасом."""

        if self.outbox_lease_seconds is not None:
            return self.outbox_lease_seconds
        rounds = math.ceil(self.outbox_batch_size / self.outbox_delivery_concurrency)
        return int(rounds * self.outbox_delivery_timeout_seconds) + 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Список разрешённых origins для CORS."""

        return _split_csv(self.cors_allow_origins)

    @property
    def cors_methods_list(self) -> list[str]:
        """Список разрешённых методов для CORS."""

        return _split_csv(self.cors_allow_methods)

    @property
    def cors_headers_list(self) -> list[str]:
        """Список разрешённых заголовков для CORS."""

        return _split_csv(self.cors_allow_headers)

    @property
    def idempotency_headers_list(self) -> list[str]:
        """Заголовки, которые входят в хэш запроса (в нижнем регистре)."""

        return [item.lower() for item in _split_csv(self.idempotency_header_whitelist)]

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    @property
    def rate_limit_policy_overrides(self) -> dict[str, dict]:
        """Переопределения политик rate limit из `RATE_LIMIT_POLICIES`."""

        return json.loads(self.rate_limit_policies or "{}")

    @property
    def sqlalchemy_url(self) -> str:
        """Вернуть sync URL подключения к БД для SQLAlchemy.

        Priority
        --------
        1) `DATABASE_URL`, если задан.
        2) Иначе собирается DSN PostgreSQL из компонентных env-переменных.

        Returns
        -------
        str
            URL для SQLAlchemy.
        """

        return self.database_url or self.postgres_dsn

    @property
    def sqlalchemy_async_url(self) -> str:
        """Вернуть async URL подключения к БД для SQLAlchemy AsyncEngine.

        Priority
        --------
        1) `DATABASE_ASYNC_URL`, если задан.
        2) Иначе строится из `DATABASE_URL`/Postgres DSN:
           - `postgresql://...` -> `postgresql+asyncpg://...`
           - `sqlite+pysqlite://...` -> `sqlite+aiosqlite://...`
        """

        url = self.database_async_url or self.sqlalchemy_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite+pysqlite://"):
            return url.replace("sqlite+pysqlite://", "sqlite+aiosqlite://", 1)
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Вернуть кэшированный экземпляр настроек.

    Returns
    -------
    Settings
        Настройки приложения.
    """

    return Settings()
