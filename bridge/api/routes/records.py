"""Эндпоинты записей."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from bridge.api.deps import Identity, get_container, get_identity
from bridge.api.procedure import run_procedure
from bridge.schemas.records import RecordCreate, RecordList, RecordOut

router = APIRouter(prefix="/records", tags=["records"])


@router.post("/", response_model=RecordOut, status_code=status.HTTP_201_CREATED)
async def create_record_endpoint(
    payload: RecordCreate,
    request: Request,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Создать запись (`records.createRecord`).

    Создание записи ставит событие `record_created` в outbox в той же
    единице работы. С заголовком `Idempotency-Key` повтор запроса вернёт
    сохранённый ответ без повторного создания.

    Parameters
    ----------
    payload : RecordCreate
        Данные записи.

    Returns
    -------
    RecordOut
        Созданная запись.

    Raises
    ------
    HTTPException
        401 без токена, 400 без `X-Org-Id`.
    """

    container = get_container(request)

    async def handler() -> RecordOut:
        return await container.records.create_record(
            identity.tenant_id,
            identity.user_id,
            payload,
        )

    return await run_procedure(
        request,
        identity,
        "records.createRecord",
        handler,
        mutation=True,
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/", response_model=RecordList)
async def list_records_endpoint(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Записи организации, новые первыми (`records.listRecords`)."""

    container = get_container(request)

    async def handler() -> RecordList:
        records = await container.records.list_records(identity.tenant_id, limit)
        return RecordList(records=records, count=len(records))

    return await run_procedure(
        request,
        identity,
        "records.listRecords",
        handler,
        mutation=False,
    )
