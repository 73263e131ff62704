from datetime import datetime
from enum import Enum
from typing import Any


class InvalidTransitionError(ValueError):
    """Raised when a job status change is not part of the queue state machine."""


class JobType(str, Enum):
    ENRICH_RECORD = "enrich_record"
    VERIFY_RECORD = "verify_record"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"

    @property
    def is_claimable(self) -> bool:
        return self in CLAIMABLE_JOB_STATUSES


class ExecSearchStatus(str, Enum):
    UNKNOWN = "unknown"
    YES = "yes"
    NO = "no"

    @classmethod
    def coerce(cls, value: Any) -> "ExecSearchStatus":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return cls.UNKNOWN


class LifecycleState(str, Enum):
    LIVE = "live"
    TOMBSTONED = "tombstoned"

    @classmethod
    def from_deleted_at(cls, deleted_at: datetime | None) -> "LifecycleState":
        return cls.TOMBSTONED if deleted_at is not None else cls.LIVE


CLAIMABLE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RATE_LIMITED})
DEFAULT_CANCEL_STATUSES = (JobStatus.QUEUED, JobStatus.RATE_LIMITED)

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RATE_LIMITED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.SUCCEEDED, JobStatus.RATE_LIMITED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def validate_job_transition(*, from_status: JobStatus | str, to_status: JobStatus | str) -> None:
    source = JobStatus(from_status)
    target = JobStatus(to_status)
    if target not in JOB_TRANSITIONS[source]:
        raise InvalidTransitionError(f"illegal job transition: {source.value} -> {target.value}")


def sources_for(target: JobStatus) -> list[str]:
    """Statuses a job may be in before moving to ``target``."""
    return sorted(source.value for source, targets in JOB_TRANSITIONS.items() if target in targets)
