import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from firmbook.core.config import get_settings
from firmbook.schemas.jobs import CancelRequest, CancelResponse, EnqueueRequest, EnqueueResponse, RunBatchResponse
from firmbook.services.jobs import get_job_runner
from firmbook.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/enqueue", response_model=EnqueueResponse)
async def enqueue_jobs(payload: EnqueueRequest, repository=Depends(get_repository)) -> EnqueueResponse:
    try:
        record_ids = await repository.list_record_ids_for_filter(**payload.filter.model_dump())
        counts = await repository.enqueue_jobs(record_ids=record_ids, job_type=payload.job_type)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info(
        "jobs enqueued type=%s matched=%s enqueued=%s skipped_cached=%s skipped_active=%s",
        payload.job_type,
        len(record_ids),
        counts["enqueued"],
        counts["skipped_cached"],
        counts["skipped_active"],
    )
    return EnqueueResponse(matched=len(record_ids), **counts)


@router.post("/run", response_model=RunBatchResponse)
async def run_jobs(
    max_jobs: int = Query(default=5, ge=1, le=50, alias="max"),
    runner=Depends(get_job_runner),
) -> RunBatchResponse:
    settings = get_settings()
    try:
        outcomes = await runner.run_batch(min(max_jobs, settings.jobs_max_batch_size))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunBatchResponse(
        processed=[outcome.as_dict() for outcome in outcomes],
        min_delay_ms=settings.jobs_min_delay_ms,
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_jobs(payload: CancelRequest, repository=Depends(get_repository)) -> CancelResponse:
    try:
        cancelled = await repository.cancel_jobs(statuses=payload.statuses)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return CancelResponse(cancelled=cancelled)
