"""Общие зависимости для роутов FastAPI (контейнер, идентичность вызывающего)."""

from __future__ import annotations

from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bridge.container import Container
from bridge.core.gateway import CallContext
from bridge.core.security import decode_access_token
from bridge.db.redis import loads_json
from bridge.services.idempotency import IDEMPOTENCY_HEADER

bearer_scheme = HTTPBearer(auto_error=False)

# Совпадают с длинами колонок tenant_id/user_id/key в БД.
MAX_TENANT_ID_LENGTH = 64
MAX_USER_ID_LENGTH = 64
MAX_IDEMPOTENCY_KEY_LENGTH = 255


@dataclass(frozen=True, slots=True)
class Identity:
    tenant_id: str
    user_id: str


def get_container(request: Request) -> Container:
    """Контейнер приложения из `app.state`."""

    return request.app.state.container


def get_client_ip(request: Request) -> str:
    """IP клиента: первый hop `X-Forwarded-For`, затем `X-Real-IP`, затем сокет."""

    xff = request.headers.get("x-forwarded-for")
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is None:
        return "unknown"
    return request.client.host


async def get_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    x_org_id: str | None = Header(None, alias="X-Org-Id"),
) -> Identity:
    """Организация и пользователь текущего вызова.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials | None
        Bearer токен (JWT, выдаётся внешним auth сервисом).
    x_org_id : str | None
        Заголовок `X-Org-Id`.

    Returns
    -------
    Identity
        Tenant и user.

    Raises
    ------
    HTTPException
        401, если токена нет или он невалиден; 400, если не передан `X-Org-Id`.
    """

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not credentials.credentials:
        raise credentials_exception

    settings = get_container(request).settings
    try:
        payload = decode_access_token(credentials.credentials, settings)
    except jwt.PyJWTError as exc:
        raise credentials_exception from exc
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject or len(subject) > MAX_USER_ID_LENGTH:
        raise credentials_exception

    tenant_id = (x_org_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Org-Id header is required",
        )
    if len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Org-Id must be at most {MAX_TENANT_ID_LENGTH} characters",
        )
    return Identity(tenant_id=tenant_id, user_id=subject)


async def _request_body(request: Request) -> object:
    raw = await request.body()
    if not raw:
        return None
    try:
        return loads_json(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return raw.decode("utf-8", errors="replace")


async def build_call_context(
    request: Request,
    identity: Identity,
    procedure: str,
) -> CallContext:
    """Собрать контекст вызова процедуры из HTTP запроса.

    Raises
    ------
    HTTPException
        400, если `Idempotency-Key` длиннее 255 символов.
    """

    idempotency_key = request.headers.get(IDEMPOTENCY_HEADER) or None
    if idempotency_key is not None and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{IDEMPOTENCY_HEADER} must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
        )
    return CallContext(
        procedure=procedure,
        method=request.method,
        path=request.url.path,
        tenant_id=identity.tenant_id,
        user_id=identity.user_id,
        client_ip=get_client_ip(request),
        idempotency_key=idempotency_key,
        body=await _request_body(request),
        headers={name.lower(): value for name, value in request.headers.items()},
    )
