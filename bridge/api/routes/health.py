"""Healthcheck эндпоинты."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
def health(request: Request) -> dict:
    """Вернуть статус приложения (без rate limit и идемпотентности).

    Returns
    -------
    dict
        JSON со статусом и режимом хранилища.
    """

    settings = request.app.state.container.settings
    return {
        "status": "ok",
        "storage_backend": settings.storage_backend,
        "webhook_configured": bool(settings.automation_webhook_url),
    }
