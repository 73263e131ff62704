from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from firmbook.core.states import DEFAULT_CANCEL_STATUSES

JobTypeValue = Literal["enrich_record", "verify_record"]
JobStatusValue = Literal["queued", "running", "succeeded", "failed", "rate_limited", "cancelled"]
CancellableJobStatus = Literal["queued", "rate_limited", "running"]


class JobFilter(BaseModel):
    ids: list[str] | None = None
    import_batch_id: str | None = None
    has_domain: bool | None = None
    missing_research_notes: bool | None = None
    missing_exec_search_status: bool | None = None


class EnqueueRequest(BaseModel):
    job_type: JobTypeValue
    filter: JobFilter = Field(default_factory=JobFilter)


class EnqueueResponse(BaseModel):
    matched: int
    enqueued: int
    skipped_cached: int
    skipped_active: int


class JobStepOut(BaseModel):
    name: str
    outcome: Literal["succeeded", "skipped", "failed"]
    reason: str | None = None


class ProcessedJobOut(BaseModel):
    id: str
    record_id: str
    job_type: JobTypeValue
    status: JobStatusValue
    error: str | None = None
    run_after: datetime | None = None
    steps: list[JobStepOut] = Field(default_factory=list)


class RunBatchResponse(BaseModel):
    processed: list[ProcessedJobOut] = Field(default_factory=list)
    min_delay_ms: int


class CancelRequest(BaseModel):
    statuses: list[CancellableJobStatus] = Field(
        default_factory=lambda: [status.value for status in DEFAULT_CANCEL_STATUSES]
    )


class CancelResponse(BaseModel):
    cancelled: int
