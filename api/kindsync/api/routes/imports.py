from fastapi import APIRouter, Depends, HTTPException, Query, status

from kindsync.core.security import get_principal
from kindsync.schemas.imports import (
    CleanupResponse,
    ImportOptions,
    JobStatusOut,
    ScheduledSyncResponse,
    SourceOut,
    StartImportResponse,
    StepResponse,
)
from kindsync.services.container import Container, get_container
from kindsync.services.orchestrator import ImportValidationError
from kindsync.services.repository import RepositoryError, RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


def _repository_http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("", response_model=list[JobStatusOut])
async def list_active_imports(
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> list[JobStatusOut]:
    try:
        principal.require_scopes({"imports:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.orchestrator.list_active()
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc


@router.get("/sources", response_model=list[SourceOut])
async def list_sources(
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> list[SourceOut]:
    try:
        principal.require_scopes({"imports:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    sources: list[SourceOut] = []
    for config in container.sources.all():
        adapter = container.sources.build_adapter(config.id)
        sources.append(
            SourceOut(
                id=config.id.value,
                name=config.name,
                kind=config.kind.value,
                pagination=config.pagination.value,
                batch_size=config.batch_size,
                requires_auth=config.requires_auth,
                requires_username=config.requires_username,
                authenticated=adapter.is_authenticated(),
            )
        )
    return sources


@router.get("/due", response_model=list[JobStatusOut])
async def list_due_imports(
    limit: int = Query(default=10, ge=1, le=100),
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> list[JobStatusOut]:
    try:
        principal.require_scopes({"imports:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.orchestrator.list_due(limit)
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_imports(
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> CleanupResponse:
    try:
        principal.require_scopes({"imports:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        deleted = await container.orchestrator.cleanup_old_jobs()
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc
    return CleanupResponse(deleted=deleted)


@router.post("/scheduled-sync", response_model=ScheduledSyncResponse)
async def run_scheduled_sync(
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> ScheduledSyncResponse:
    try:
        principal.require_scopes({"imports:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.orchestrator.run_scheduled_sync()
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc


@router.post("/{source}", response_model=StartImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    source: str,
    payload: ImportOptions | None = None,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> StartImportResponse:
    try:
        principal.require_scopes({"imports:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await container.orchestrator.start_import(source, payload)
    except ImportValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc
    return StartImportResponse(job_id=job.id, status=job.status)


@router.get("/{job_id}", response_model=JobStatusOut)
async def get_import_status(
    job_id: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobStatusOut:
    try:
        principal.require_scopes({"imports:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await container.orchestrator.get_status(job_id)
    except ImportValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=JobStatusOut)
async def cancel_import(
    job_id: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobStatusOut:
    try:
        principal.require_scopes({"imports:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        await container.orchestrator.cancel(job_id)
        return await container.orchestrator.get_status(job_id)
    except ImportValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc


@router.post("/{job_id}/step", response_model=StepResponse)
async def run_import_step(
    job_id: str,
    principal=Depends(get_principal),
    container: Container = Depends(get_container),
) -> StepResponse:
    try:
        principal.require_scopes({"imports:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await container.orchestrator.process_batch(job_id)
    except RepositoryError as exc:
        raise _repository_http_error(exc) from exc
    return StepResponse(job_id=result.job_id, outcome=result.outcome.value, status=result.status)
