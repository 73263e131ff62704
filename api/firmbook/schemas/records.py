from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ExecSearchStatusValue = Literal["unknown", "yes", "no"]
DedupKindValue = Literal["email", "linkedin", "domain_exec", "none"]


class RecordOut(BaseModel):
    id: str
    company_name: str = ""
    domain: str = ""
    exec_search_category: str = ""
    exec_search_status: ExecSearchStatusValue = "unknown"
    perplexity_research_notes: str = ""
    firm_niche: str = ""
    executive_name: str = ""
    executive_role: str = ""
    executive_linkedin: str = ""
    email: str = ""
    email_template: str = ""
    source_file: str = ""
    raw_row_json: str = ""
    import_batch_id: str | None = None
    company_id: str | None = None
    created_at: datetime
    updated_at: datetime


class RecordPatchRequest(BaseModel):
    company_name: str | None = None
    domain: str | None = None
    exec_search_category: str | None = None
    exec_search_status: ExecSearchStatusValue | None = None
    perplexity_research_notes: str | None = None
    firm_niche: str | None = None
    executive_name: str | None = None
    executive_role: str | None = None
    executive_linkedin: str | None = None
    email: str | None = None
    email_template: str | None = None
    source_file: str | None = None


class RecordDeleteRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=5000)


class RecordDeleteResponse(BaseModel):
    deleted: int


class ImportRow(BaseModel):
    company_name: str | None = None
    domain: str | None = None
    website: str | None = None
    exec_search_category: str | None = None
    exec_search_status: str | None = None
    perplexity_research_notes: str | None = None
    firm_niche: str | None = None
    executive_name: str | None = None
    executive_role: str | None = None
    executive_linkedin: str | None = None
    email: str | None = None
    email_template: str | None = None
    source_file: str | None = None
    raw_row_json: str | None = None


class ImportRequest(BaseModel):
    source_file: str = ""
    rows: list[ImportRow] = Field(default_factory=list, max_length=20000)


class ImportRowWarning(BaseModel):
    row: int
    messages: list[str] = Field(default_factory=list)


class ImportRowError(BaseModel):
    row: int
    error: str


class ImportResponse(BaseModel):
    import_batch_id: str | None = None
    created: int
    updated: int
    dedup_counts: dict[DedupKindValue, int] = Field(default_factory=dict)
    warnings: list[ImportRowWarning] = Field(default_factory=list)
    errors: list[ImportRowError] = Field(default_factory=list)
    records: list[RecordOut] = Field(default_factory=list)


class UndoImportResponse(BaseModel):
    batch_id: str | None = None
    deleted: int


class RecordJobStatusOut(BaseModel):
    status: str
    updated_at: datetime


class RecordJobsResponse(BaseModel):
    statuses: dict[str, RecordJobStatusOut | None] = Field(default_factory=dict)


class EmailPreviewOut(BaseModel):
    record_id: str
    template: str
    rendered: str
    missing_template: bool = False
    context: dict[str, Any] = Field(default_factory=dict)
