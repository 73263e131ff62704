from fastapi import APIRouter, Depends, HTTPException, status

from firmbook.schemas.snippets import SnippetOut, SnippetUpsertRequest
from firmbook.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[SnippetOut])
async def list_snippets(repository=Depends(get_repository)) -> list[SnippetOut]:
    try:
        rows = await repository.list_snippets()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [SnippetOut(**row) for row in rows]


@router.post("", response_model=SnippetOut)
async def upsert_snippet(payload: SnippetUpsertRequest, repository=Depends(get_repository)) -> SnippetOut:
    try:
        row = await repository.upsert_snippet(key=payload.key, value=payload.value)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return SnippetOut(**row)


@router.delete("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_snippet(key: str, repository=Depends(get_repository)) -> None:
    try:
        deleted = await repository.delete_snippet(key)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="snippet not found")
