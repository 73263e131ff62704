import json
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from firmbook.core.states import JobType

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193

# Record columns each job type reads; a change to any of them invalidates the last run.
JOB_FINGERPRINT_FIELDS: dict[JobType, tuple[str, ...]] = {
    JobType.VERIFY_RECORD: (
        "company_name",
        "domain",
        "exec_search_category",
        "firm_niche",
        "executive_name",
        "executive_role",
        "executive_linkedin",
        "email",
        "perplexity_research_notes",
    ),
    JobType.ENRICH_RECORD: (
        "company_name",
        "domain",
        "executive_name",
        "executive_linkedin",
    ),
}


def canonicalize(value: Any) -> Any:
    """Order-independent form of a JSON-like value used for fingerprints."""
    if isinstance(value, dict):
        return {str(key): canonicalize(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def stable_hash(value: Any) -> str:
    """Non-cryptographic cache-key digest (32-bit FNV-1a over canonical JSON)."""
    serialized = json.dumps(canonicalize(value), separators=(",", ":"), ensure_ascii=False, default=str)
    digest = FNV_OFFSET_BASIS
    for byte in serialized.encode("utf-8"):
        digest ^= byte
        digest = (digest * FNV_PRIME) & 0xFFFFFFFF
    return f"fnv1a:{digest:x}"


def job_input_fingerprint(job_type: JobType | str, record: Mapping[str, Any]) -> str:
    fields = JOB_FINGERPRINT_FIELDS[JobType(job_type)]
    return stable_hash({field: record.get(field) for field in fields})
