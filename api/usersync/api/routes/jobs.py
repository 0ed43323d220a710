import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from usersync.core.config import Settings, get_settings
from usersync.core.security import get_machine_principal
from usersync.schemas.jobs import JobOut, ProcessBatchResult, ProcessResult, SweepResult
from usersync.services.identity import get_identity_store
from usersync.services.processor import JobProcessor
from usersync.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_job_processor(
    repository=Depends(get_repository),
    identity=Depends(get_identity_store),
) -> JobProcessor:
    return JobProcessor(repository=repository, identity=identity)


def _require(principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/process", response_model=ProcessBatchResult | ProcessResult)
async def process_jobs(
    max_jobs: int = Query(default=1, ge=1, le=50),
    principal=Depends(get_machine_principal),
    processor: JobProcessor = Depends(get_job_processor),
):
    _require(principal, {"jobs:write"})

    if max_jobs == 1:
        summary = await processor.process_next()
        if not summary.get("success"):
            return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=summary)
        return ProcessResult(**summary)

    summaries = await processor.process_batch(max_jobs)
    processed = [ProcessResult(**summary) for summary in summaries if "jobId" in summary]
    success = all(summary.get("success") for summary in summaries)
    batch = ProcessBatchResult(success=success, count=len(processed), processed=processed)
    if not success:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=batch.model_dump(mode="json"))
    return batch


@router.post("/retry-sweep", response_model=SweepResult)
async def retry_sweep(
    limit: int = Query(default=1000, ge=1, le=10000),
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> SweepResult:
    _require(principal, {"jobs:write"})
    try:
        requeued = await repository.requeue_retry_jobs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SweepResult(requeued=requeued)


@router.post("/reap-stale", response_model=SweepResult)
async def reap_stale_processing(
    limit: int = Query(default=100, ge=1, le=1000),
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> SweepResult:
    _require(principal, {"jobs:write"})
    try:
        released = await repository.fail_stale_processing_jobs(
            stale_after_seconds=settings.job_stale_processing_seconds,
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SweepResult(requeued=released)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    status_filter: str | None = Query(default=None, alias="status"),
    job_type: str | None = None,
    clerk_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> list[JobOut]:
    _require(principal, {"jobs:read"})
    try:
        jobs = await repository.list_jobs(status=status_filter, job_type=job_type, clerk_id=clerk_id, limit=limit)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut.model_validate(job) for job in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    _require(principal, {"jobs:read"})
    try:
        job = await repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut.model_validate(job)
