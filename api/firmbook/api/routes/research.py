from fastapi import APIRouter, Depends, HTTPException, status

from firmbook.api.routes.record_ai import upstream_http_error
from firmbook.schemas.research import (
    ResearchAddRequest,
    ResearchAddResponse,
    ResearchSuggestRequest,
    ResearchSuggestResponse,
)
from firmbook.services.ai import UpstreamError, get_ai_client
from firmbook.services.ai_cache import AICache
from firmbook.services.intake import add_research_firms, suggest_research_firms
from firmbook.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/suggest", response_model=ResearchSuggestResponse)
async def suggest_firms(
    payload: ResearchSuggestRequest,
    repository=Depends(get_repository),
    ai_client=Depends(get_ai_client),
) -> ResearchSuggestResponse:
    if not payload.command.strip():
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="command must not be blank")
    try:
        result = await suggest_research_firms(repository, ai_client, AICache(repository), command=payload.command)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise upstream_http_error(exc) from exc
    return ResearchSuggestResponse(**result)


@router.post("/add", response_model=ResearchAddResponse)
async def add_from_research(payload: ResearchAddRequest, repository=Depends(get_repository)) -> ResearchAddResponse:
    try:
        result = await add_research_firms(
            repository,
            suggestions=[suggestion.model_dump() for suggestion in payload.suggestions],
            domains=payload.domains,
            command=payload.command,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ResearchAddResponse(**result)
