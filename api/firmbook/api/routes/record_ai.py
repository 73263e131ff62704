from collections.abc import Awaitable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from firmbook.schemas.record_ai import CategorizeResponse, DeepNotesResponse, ExecutivesResponse, RecordStepResponse
from firmbook.services.ai import UpstreamError
from firmbook.services.enrichment import get_record_job_executor
from firmbook.services.repository import RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


def upstream_http_error(exc: UpstreamError) -> HTTPException:
    if exc.is_rate_limited:
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


async def _run(action: Awaitable[Any]) -> Any:
    try:
        return await action
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise upstream_http_error(exc) from exc


async def _run_step(executor: Any, record_id: str, name: str) -> RecordStepResponse:
    record, step = await _run(executor.run_step(record_id, name))
    return RecordStepResponse(
        record=record,
        step=step.name,
        outcome=step.outcome.value,
        reason=step.reason,
        output=step.output,
    )


@router.post("/{record_id}/ai/verify-exec-search", response_model=RecordStepResponse)
async def verify_exec_search(record_id: str, executor=Depends(get_record_job_executor)) -> RecordStepResponse:
    return await _run_step(executor, record_id, "verify_exec_search")


@router.post("/{record_id}/ai/draft-email-template", response_model=RecordStepResponse)
async def draft_email_template(record_id: str, executor=Depends(get_record_job_executor)) -> RecordStepResponse:
    return await _run_step(executor, record_id, "draft_email_template")


@router.post("/{record_id}/ai/research", response_model=RecordStepResponse)
async def research_record(record_id: str, executor=Depends(get_record_job_executor)) -> RecordStepResponse:
    return await _run_step(executor, record_id, "research_notes")


@router.post("/{record_id}/ai/deep-notes", response_model=DeepNotesResponse)
async def deep_notes(record_id: str, executor=Depends(get_record_job_executor)) -> DeepNotesResponse:
    return DeepNotesResponse(**await _run(executor.deep_notes(record_id)))


@router.post("/{record_id}/ai/categorize", response_model=CategorizeResponse)
async def categorize(record_id: str, executor=Depends(get_record_job_executor)) -> CategorizeResponse:
    return CategorizeResponse(**await _run(executor.categorize(record_id)))


@router.post("/{record_id}/ai/executives", response_model=ExecutivesResponse)
async def executives(record_id: str, executor=Depends(get_record_job_executor)) -> ExecutivesResponse:
    return ExecutivesResponse(**await _run(executor.executives(record_id)))
