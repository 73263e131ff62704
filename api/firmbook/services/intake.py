from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from firmbook.core.normalize import (
    clean,
    extract_domain_from_email,
    is_valid_domain_like,
    normalize_domain,
    sanitize_domain,
)
from firmbook.core.states import ExecSearchStatus, JobType
from firmbook.services.ai import UpstreamError
from firmbook.services.ai_cache import signature_cache_key
from firmbook.services.repository import RepositoryConflictError, RepositoryValidationError

logger = logging.getLogger(__name__)

_URL_HINT_RE = re.compile(r"https?://|\bwww\.", re.IGNORECASE)
_EMAIL_HINT_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")


def _looks_like_url(value: str) -> bool:
    return bool(_URL_HINT_RE.search(value))


def _looks_like_email(value: str) -> bool:
    return bool(_EMAIL_HINT_RE.search(value))


def cleanup_imported_row(row: Mapping[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Repair common column misplacements in a mapped import row.

    Returns the cleaned row and human-readable warnings for every value that
    was moved. A value that is not domain-shaped never fails the row; it is
    cleared from ``domain`` instead.
    """
    warnings: list[str] = []
    cleaned: dict[str, Any] = {}
    for key, value in row.items():
        if key == "exec_search_status":
            cleaned[key] = ExecSearchStatus.coerce(value).value
        elif isinstance(value, str) or value is None:
            cleaned[key] = clean(value)
        else:
            cleaned[key] = value

    company_name = cleaned.get("company_name", "")
    website = cleaned.get("website", "")
    if company_name and _looks_like_url(company_name) and not website:
        cleaned["website"] = website = company_name
        cleaned["company_name"] = company_name = ""
        warnings.append("moved company_name (looked like URL) to website")

    domain = cleaned.get("domain", "")
    if domain:
        normalized = normalize_domain(domain)
        if normalized and is_valid_domain_like(normalized):
            cleaned["domain"] = normalized
        else:
            if not company_name and not _looks_like_url(domain) and not _looks_like_email(domain) and len(domain) > 2:
                cleaned["company_name"] = company_name = domain
                warnings.append("moved domain (not domain-like) to company_name")
            cleaned["domain"] = ""

    executive_name = cleaned.get("executive_name", "")
    email = cleaned.get("email", "")
    if executive_name and _looks_like_email(executive_name) and not email:
        cleaned["email"] = email = executive_name
        cleaned["executive_name"] = executive_name = ""
        warnings.append("moved executive_name (looked like email) to email")

    if email and not _looks_like_email(email) and not executive_name and len(email.split()) >= 2:
        cleaned["executive_name"] = email
        cleaned["email"] = email = ""
        warnings.append("moved email (looked like name) to executive_name")

    if email:
        cleaned["email"] = email = email.lower()

    if not cleaned.get("domain"):
        from_website = normalize_domain(website)
        if from_website and is_valid_domain_like(from_website):
            cleaned["domain"] = from_website
    if not cleaned.get("domain") and email:
        from_email = normalize_domain(extract_domain_from_email(email))
        if from_email and is_valid_domain_like(from_email):
            cleaned["domain"] = from_email

    if website:
        cleaned["website"] = normalize_domain(website)

    return cleaned, warnings


async def import_rows(
    repository: Any,
    *,
    rows: list[dict[str, Any]],
    source_file: str,
) -> dict[str, Any]:
    if not rows:
        return {
            "import_batch_id": None,
            "created": 0,
            "updated": 0,
            "dedup_counts": {},
            "warnings": [],
            "errors": [],
            "records": [],
        }

    batch_id = await repository.create_import_batch(source_file=source_file, row_count=len(rows))
    created = 0
    updated = 0
    dedup_counts: dict[str, int] = {}
    warnings: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    records: list[dict[str, Any]] = []

    for index, row in enumerate(rows):
        cleaned, row_warnings = cleanup_imported_row(row)
        if row_warnings:
            warnings.append({"row": index, "messages": row_warnings})
        if not cleaned.get("source_file"):
            cleaned["source_file"] = source_file

        try:
            result = await repository.upsert_merged_record(cleaned, import_batch_id=batch_id)
        except (RepositoryConflictError, RepositoryValidationError) as exc:
            logger.info("import row rejected batch_id=%s row=%s error=%s", batch_id, index, exc)
            errors.append({"row": index, "error": str(exc)})
            continue

        if result["created"]:
            created += 1
        else:
            updated += 1
        dedup_counts[result["dedup_kind"]] = dedup_counts.get(result["dedup_kind"], 0) + 1
        records.append(result["record"])

    logger.info(
        "import finished batch_id=%s rows=%s created=%s updated=%s errors=%s",
        batch_id,
        len(rows),
        created,
        updated,
        len(errors),
    )
    return {
        "import_batch_id": batch_id,
        "created": created,
        "updated": updated,
        "dedup_counts": dedup_counts,
        "warnings": warnings,
        "errors": errors,
        "records": records,
    }


async def add_research_firms(
    repository: Any,
    *,
    suggestions: list[dict[str, Any]],
    domains: list[str],
    command: str,
) -> dict[str, Any]:
    """Add the picked research suggestions as firm-only records.

    Each added firm gets a company row, a record linked to it and a queued
    enrich job. Domains already present in the record store are counted as
    existing instead of being merged again.
    """
    picked_domains = {normalize_domain(domain) for domain in domains} - {""}
    added_domains: list[str] = []
    filtered_existing = 0

    for suggestion in suggestions:
        domain = normalize_domain(suggestion.get("domain"))
        if not domain or domain not in picked_domains or domain in added_domains:
            continue

        if await repository.record_exists_for_domain(domain):
            filtered_existing += 1
            continue
        try:
            company = await repository.upsert_company(company_name=suggestion.get("company_name", ""), domain=domain)
        except RepositoryConflictError:
            filtered_existing += 1
            continue

        notes = clean(suggestion.get("notes"))
        sources = [clean(source) for source in suggestion.get("sources") or [] if clean(source)]
        if sources:
            notes = "\n\nSources:\n".join(part for part in (notes, "\n".join(sources)) if part)

        result = await repository.upsert_merged_record(
            {
                "company_name": suggestion.get("company_name", ""),
                "domain": domain,
                "perplexity_research_notes": notes,
                "source_file": f"research:{command}" if command else "research",
                "raw_row_json": json.dumps({"research_command": command, "suggestion": suggestion}),
            }
        )
        record_id = result["record"]["id"]
        await repository.link_record_company(record_id=record_id, company_id=company["id"])
        await repository.enqueue_jobs(record_ids=[record_id], job_type=JobType.ENRICH_RECORD)
        added_domains.append(domain)

    return {
        "added_domains": added_domains,
        "telemetry": {
            "suggested": len(suggestions),
            "filtered_existing": filtered_existing,
            "added": len(added_domains),
        },
    }


RESEARCH_SUGGEST_CACHE_FEATURE = "research-suggest"
RESEARCH_SUGGEST_CACHE_VERSION = "v1"
RESEARCH_SUGGEST_EXTRACT_PROMPT = (
    "Extract structured firm suggestions from the given text. Output ONLY JSON with shape "
    '{suggestions: [{company_name, domain, notes, sources}]}. Domains must be bare domains like "example.com".'
)


class SuggestedFirm(BaseModel):
    company_name: str = ""
    domain: str = ""
    notes: str = ""
    sources: list[str] = Field(default_factory=list)


class SuggestedFirms(BaseModel):
    suggestions: list[SuggestedFirm] = Field(default_factory=list)


async def _research_firm_suggestions(ai_client: Any, command: str) -> list[dict[str, Any]]:
    text = await ai_client.research(
        f"Return a list of firms for this query: {command}\n\n"
        "For each firm include: company name, domain, notes, sources (URLs). Provide as compact JSON if possible."
    )
    payload = await ai_client.chat_json(
        [
            {"role": "system", "content": RESEARCH_SUGGEST_EXTRACT_PROMPT},
            {"role": "user", "content": text},
        ],
        temperature=0.0,
    )
    try:
        parsed = SuggestedFirms.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamError("openai", None, "unexpected completion shape for SuggestedFirms") from exc
    return [suggestion.model_dump() for suggestion in parsed.suggestions]


async def suggest_research_firms(repository: Any, ai_client: Any, cache: Any, *, command: str) -> dict[str, Any]:
    """Ask the research provider for firms matching ``command``.

    Suggestions are deduplicated by domain, suggestions without a usable
    domain are dropped, and firms whose domain is already known are filtered
    out. The raw suggestion list is cached per command.
    """
    command = clean(command)
    cache_key = signature_cache_key(
        RESEARCH_SUGGEST_CACHE_FEATURE,
        RESEARCH_SUGGEST_CACHE_VERSION,
        {"command": command.lower()},
    )
    raw: list[dict[str, Any]] | None = None
    cached = await cache.get(cache_key)
    if cached is not None:
        try:
            raw = [suggestion.model_dump() for suggestion in SuggestedFirms.model_validate(cached).suggestions]
        except ValidationError:
            logger.info("discarding malformed research cache entry key=%s", cache_key)
    cache_hit = raw is not None
    if raw is None:
        raw = await _research_firm_suggestions(ai_client, command)
        await cache.set(cache_key, {"suggestions": raw})

    unique: dict[str, dict[str, Any]] = {}
    for suggestion in raw:
        domain = sanitize_domain(suggestion["domain"])
        if not domain or domain in unique:
            continue
        unique[domain] = {
            "company_name": clean(suggestion["company_name"]),
            "domain": domain,
            "notes": clean(suggestion["notes"]),
            "sources": [clean(source) for source in suggestion["sources"] if clean(source)],
        }

    existing = await repository.existing_domains(list(unique))
    suggestions = [suggestion for domain, suggestion in unique.items() if domain not in existing]
    logger.info(
        "research suggestions command=%r suggested=%s filtered_existing=%s cached=%s",
        command,
        len(unique),
        len(unique) - len(suggestions),
        cache_hit,
    )
    return {
        "suggestions": suggestions,
        "cached": cache_hit,
        "telemetry": {"suggested": len(unique), "filtered_existing": len(unique) - len(suggestions)},
    }
