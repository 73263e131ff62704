from fastapi import APIRouter, Depends, HTTPException, Query, status

from firmbook.core.config import get_settings
from firmbook.schemas.records import (
    EmailPreviewOut,
    ImportRequest,
    ImportResponse,
    RecordDeleteRequest,
    RecordDeleteResponse,
    RecordJobsResponse,
    RecordOut,
    RecordPatchRequest,
    UndoImportResponse,
)
from firmbook.services.intake import import_rows
from firmbook.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from firmbook.services.templates import render_template, template_builtins

router = APIRouter()


@router.get("", response_model=list[RecordOut])
async def list_records(
    limit: int | None = Query(default=None, ge=1, le=5000),
    repository=Depends(get_repository),
) -> list[RecordOut]:
    try:
        rows = await repository.list_records(limit=limit or get_settings().records_list_limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [RecordOut(**row) for row in rows]


@router.get("/jobs", response_model=RecordJobsResponse)
async def list_record_job_statuses(
    limit: int | None = Query(default=None, ge=1, le=5000),
    repository=Depends(get_repository),
) -> RecordJobsResponse:
    try:
        rows = await repository.list_records(limit=limit or get_settings().records_list_limit)
        record_ids = [row["id"] for row in rows]
        by_record = await repository.list_job_status_by_record_ids(record_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RecordJobsResponse(statuses={record_id: by_record.get(record_id) for record_id in record_ids})


@router.post("/import", response_model=ImportResponse)
async def import_records(payload: ImportRequest, repository=Depends(get_repository)) -> ImportResponse:
    rows = [row.model_dump(exclude_none=True) for row in payload.rows]
    try:
        result = await import_rows(repository, rows=rows, source_file=payload.source_file)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ImportResponse(**result)


@router.post("/undo-latest-import", response_model=UndoImportResponse)
async def undo_latest_import(repository=Depends(get_repository)) -> UndoImportResponse:
    try:
        result = await repository.undo_latest_import()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return UndoImportResponse(**result)


@router.post("/delete", response_model=RecordDeleteResponse)
async def delete_records(payload: RecordDeleteRequest, repository=Depends(get_repository)) -> RecordDeleteResponse:
    try:
        deleted = await repository.delete_records(payload.ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return RecordDeleteResponse(deleted=deleted)


@router.patch("/{record_id}", response_model=RecordOut)
async def patch_record(
    record_id: str,
    payload: RecordPatchRequest,
    repository=Depends(get_repository),
) -> RecordOut:
    try:
        row = await repository.update_record(record_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return RecordOut(**row)


@router.get("/{record_id}/email-preview", response_model=EmailPreviewOut)
async def preview_email(record_id: str, repository=Depends(get_repository)) -> EmailPreviewOut:
    try:
        record = await repository.get_record(record_id)
        snippets = await repository.list_snippets()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    snippet_values = {snippet["key"]: snippet["value"] for snippet in snippets}
    template = record["email_template"]
    return EmailPreviewOut(
        record_id=record["id"],
        template=template,
        rendered=render_template(template, record, snippet_values),
        missing_template=not template,
        context=template_builtins(record),
    )
