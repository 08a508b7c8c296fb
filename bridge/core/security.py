"""JWT утилиты для идентификации вызывающего.

Аутентификация живёт во внешнем сервисе: здесь только проверка bearer
токена и извлечение `sub` (id пользователя). Используется `PyJWT`
(HS256 по умолчанию).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from bridge.core.config import Settings


def create_access_token(
    subject: str,
    settings: Settings,
    *,
    expires_minutes: int | None = None,
) -> str:
    """Создать JWT access token.

    Parameters
    ----------
    subject : str
        Subject токена (id пользователя).
    settings : Settings
        Настройки (секрет и алгоритм).
    expires_minutes : int | None
        Время жизни токена; по умолчанию `ACCESS_TOKEN_EXPIRE_MINUTES`.

    Returns
    -------
    str
        JWT токен.
    """

    minutes = expires_minutes or settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(
        to_encode,
        settings.secret_key.get_secret_value(),
        algorithm=settings.algorithm,
    )


def decode_access_token(token: str, settings: Settings) -> dict:
    """Декодировать JWT токен и вернуть payload.

    Raises
    ------
    jwt.PyJWTError
        Если токен невалиден или просрочен.
    """

    return jwt.decode(
        token,
        settings.secret_key.get_secret_value(),
        algorithms=[settings.algorithm],
    )
