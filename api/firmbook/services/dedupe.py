from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from firmbook.core.normalize import clean, normalize_company_name, normalize_linkedin, sanitize_domain
from firmbook.core.states import ExecSearchStatus, LifecycleState

DedupKind = Literal["email", "linkedin", "domain_exec", "none"]

# Columns merged with "first non-empty wins, existing first".
MERGEABLE_RECORD_FIELDS = (
    "company_name",
    "domain",
    "exec_search_category",
    "perplexity_research_notes",
    "firm_niche",
    "executive_name",
    "executive_role",
    "executive_linkedin",
    "email",
    "source_file",
    "raw_row_json",
)
# Columns that only fill an unset existing value (coalesced in SQL).
COALESCED_RECORD_FIELDS = ("exec_search_status", "email_template")
RECORD_INPUT_FIELDS = MERGEABLE_RECORD_FIELDS + COALESCED_RECORD_FIELDS

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class DedupKey:
    kind: DedupKind
    key: str


@dataclass(slots=True)
class CompanyMergePlan:
    domain: str
    canonical: dict[str, Any]
    dupes: list[dict[str, Any]]
    merged_company_name: str
    merged_normalized_name: str

    @property
    def participant_ids(self) -> list[str]:
        return [self.canonical["id"], *self.dupe_ids]

    @property
    def dupe_ids(self) -> list[str]:
        return [row["id"] for row in self.dupes]

    def before(self) -> dict[str, Any]:
        return {
            "canonical": _company_snapshot(self.canonical),
            "dupes": [_company_snapshot(row) for row in self.dupes],
        }

    def after(self) -> dict[str, Any]:
        canonical = _company_snapshot(self.canonical)
        canonical["company_name"] = self.merged_company_name
        canonical["normalized_name"] = self.merged_normalized_name
        return {
            "canonical": canonical,
            "dupes": [_company_snapshot(row, state=LifecycleState.TOMBSTONED) for row in self.dupes],
        }


def prepare_incoming_record(incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Clean an incoming record payload before it reaches the store.

    Domains that are not domain-shaped are cleared instead of rejected, so a
    company name typed into a domain column never fails an import.
    """
    prepared = {field: clean(incoming.get(field)) for field in MERGEABLE_RECORD_FIELDS}
    prepared["domain"] = sanitize_domain(prepared["domain"])
    prepared["executive_linkedin"] = normalize_linkedin(prepared["executive_linkedin"])
    prepared["exec_search_status"] = ExecSearchStatus.coerce(incoming.get("exec_search_status")).value
    prepared["email_template"] = clean(incoming.get("email_template"))
    return prepared


def compute_dedup_key(record: Mapping[str, Any]) -> DedupKey:
    email = clean(record.get("email")).lower()
    linkedin = clean(record.get("executive_linkedin")).lower()
    domain = clean(record.get("domain")).lower()
    executive = clean(record.get("executive_name")).lower()

    if email:
        return DedupKey(kind="email", key=email)
    if linkedin:
        return DedupKey(kind="linkedin", key=linkedin)
    if domain and executive:
        return DedupKey(kind="domain_exec", key=f"{domain}::{executive}")
    return DedupKey(kind="none", key="")


def dedup_lookups(record: Mapping[str, Any]) -> list[tuple[DedupKind, tuple[str, ...]]]:
    """Lookup keys in match-priority order; empty identities are skipped."""
    lookups: list[tuple[DedupKind, tuple[str, ...]]] = []
    email = clean(record.get("email")).lower()
    if email:
        lookups.append(("email", (email,)))
    linkedin = clean(record.get("executive_linkedin")).lower()
    if linkedin:
        lookups.append(("linkedin", (linkedin,)))
    domain = clean(record.get("domain")).lower()
    executive = clean(record.get("executive_name")).lower()
    if domain and executive:
        lookups.append(("domain_exec", (domain, executive)))
    return lookups


def pick_first_non_empty(*values: Any) -> str:
    for value in values:
        text = clean(value)
        if text:
            return text
    return ""


def merge_record_fields(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, str]:
    return {
        field: pick_first_non_empty(existing.get(field), incoming.get(field))
        for field in MERGEABLE_RECORD_FIELDS
    }


def plan_company_merge(domain: str, companies: list[dict[str, Any]]) -> CompanyMergePlan | None:
    """Pick the surviving company for a duplicated domain.

    The survivor is the most recently updated company (ties broken by the most
    recent creation). Returns ``None`` when there is nothing to merge.
    """
    if len(companies) <= 1:
        return None

    ranked = sorted(
        companies,
        key=lambda row: (row.get("updated_at") or _EPOCH, row.get("created_at") or _EPOCH, row["id"]),
        reverse=True,
    )
    canonical, dupes = ranked[0], ranked[1:]

    merged_company_name = pick_first_non_empty(
        canonical.get("company_name"),
        *(row.get("company_name") for row in dupes),
    )
    merged_normalized_name = pick_first_non_empty(
        canonical.get("normalized_name"),
        *(row.get("normalized_name") for row in dupes),
    ) or normalize_company_name(merged_company_name)

    return CompanyMergePlan(
        domain=domain,
        canonical=canonical,
        dupes=dupes,
        merged_company_name=merged_company_name,
        merged_normalized_name=merged_normalized_name,
    )


def _company_snapshot(row: Mapping[str, Any], *, state: LifecycleState | None = None) -> dict[str, Any]:
    snapshot: dict[str, Any] = {}
    for key in ("id", "company_name", "domain", "normalized_name", "created_at", "updated_at", "deleted_at"):
        value = row.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else value
    snapshot["state"] = (state or LifecycleState.from_deleted_at(row.get("deleted_at"))).value
    return snapshot
