from typing import Any

from pydantic import BaseModel, Field


class DuplicateDomainOut(BaseModel):
    domain: str
    company_ids: list[str] = Field(default_factory=list)
    record_ids: list[str] = Field(default_factory=list)
    company_count: int
    record_count: int


class DuplicateDomainReport(BaseModel):
    duplicates: list[DuplicateDomainOut] = Field(default_factory=list)


class CompanyMergeRequest(BaseModel):
    domain: str = Field(min_length=1)
    apply: bool = False


class CompanyMergeOut(BaseModel):
    domain: str
    canonical_company_id: str | None = None
    merged_company_ids: list[str] = Field(default_factory=list)
    moved_record_ids: list[str] = Field(default_factory=list)
    deleted_company_ids: list[str] = Field(default_factory=list)
    dry_run: bool
    log_id: str | None = None


class CompanyMergeLogOut(BaseModel):
    id: str
    domain: str
    canonical_company_id: str | None = None
    merged_company_ids: list[str] = Field(default_factory=list)
    moved_record_ids: list[str] = Field(default_factory=list)
    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool
