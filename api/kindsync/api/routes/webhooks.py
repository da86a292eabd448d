from fastapi import APIRouter, Depends, HTTPException, Query, status
from starlette.requests import Request

from kindsync.core.security import get_principal
from kindsync.core.webhook_auth import WebhookRequest, WebhookValidationError
from kindsync.schemas.webhooks import TokenRotateResponse, WebhookLogEntry, WebhookResult
from kindsync.services.container import Container, get_container
from kindsync.services.content import ContentRepositoryError
from kindsync.services.repository import RepositoryUnavailableError

router = APIRouter()

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


async def _webhook_request(request: Request) -> WebhookRequest:
    body = await request.body()
    form: dict[str, str] | None = None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        parsed = await request.form()
        form = {key: value for key, value in parsed.items() if isinstance(value, str)}
    return WebhookRequest(
        headers={key.lower(): value for key, value in request.headers.items()},
        query=dict(request.query_params),
        body=body,
        form=form,
    )


@router.get("/log", response_model=list[WebhookLogEntry])
async def get_webhook_log(
    limit: int = Query(default=50, ge=1, le=100),
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> list[WebhookLogEntry]:
    try:
        principal.require_scopes({"webhooks:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.webhooks.recent_log(limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{service}", response_model=WebhookResult, response_model_exclude_none=True)
async def receive_webhook(
    service: str,
    request: Request,
    container: Container = Depends(get_container),
) -> WebhookResult:
    webhook_request = await _webhook_request(request)
    try:
        return await container.webhooks.handle(service, webhook_request)
    except WebhookValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except ContentRepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{service}/token", response_model=TokenRotateResponse)
async def rotate_webhook_token(
    service: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> TokenRotateResponse:
    try:
        principal.require_scopes({"webhooks:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.webhooks.rotate_token(service)
    except WebhookValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
