from fastapi import APIRouter, Depends, HTTPException, Query, status

from firmbook.core.security import require_maintenance_token
from firmbook.schemas.maintenance import (
    CompanyMergeLogOut,
    CompanyMergeOut,
    CompanyMergeRequest,
    DuplicateDomainOut,
    DuplicateDomainReport,
)
from firmbook.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter(dependencies=[Depends(require_maintenance_token)])


@router.get("/dedupe", response_model=DuplicateDomainReport)
async def duplicate_domain_report(
    limit: int = Query(default=200, ge=1, le=1000),
    repository=Depends(get_repository),
) -> DuplicateDomainReport:
    try:
        rows = await repository.find_duplicate_domains(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return DuplicateDomainReport(duplicates=[DuplicateDomainOut(**row) for row in rows])


@router.post("/dedupe", response_model=CompanyMergeOut)
async def merge_companies(payload: CompanyMergeRequest, repository=Depends(get_repository)) -> CompanyMergeOut:
    try:
        result = await repository.merge_companies_by_domain(domain=payload.domain, dry_run=not payload.apply)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return CompanyMergeOut(**result)


@router.get("/dedupe/log", response_model=list[CompanyMergeLogOut])
async def company_merge_log(
    domain: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    repository=Depends(get_repository),
) -> list[CompanyMergeLogOut]:
    try:
        rows = await repository.list_company_merge_log(domain=domain, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [CompanyMergeLogOut(**row) for row in rows]
