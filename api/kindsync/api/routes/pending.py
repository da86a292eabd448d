from fastapi import APIRouter, Depends, HTTPException, status

from kindsync.core.security import get_principal
from kindsync.schemas.webhooks import ApproveResponse, PendingEntry, RejectResponse
from kindsync.services.container import Container, get_container
from kindsync.services.content import ContentRepositoryError
from kindsync.services.pending import PendingNotFoundError
from kindsync.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=list[PendingEntry])
async def list_pending(
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> list[PendingEntry]:
    try:
        principal.require_scopes({"pending:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.pending.list()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{entry_id}/approve", response_model=ApproveResponse)
async def approve_pending(
    entry_id: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> ApproveResponse:
    try:
        principal.require_scopes({"pending:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.pending.approve(entry_id)
    except PendingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pending entry not found") from exc
    except ContentRepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/{entry_id}/reject", response_model=RejectResponse)
async def reject_pending(
    entry_id: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> RejectResponse:
    try:
        principal.require_scopes({"pending:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.pending.reject(entry_id)
    except PendingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pending entry not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
