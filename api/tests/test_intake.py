from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from firmbook.services.ai import UpstreamError
from firmbook.services.ai_cache import AICache
from firmbook.services.dedupe import compute_dedup_key, prepare_incoming_record
from firmbook.services.intake import add_research_firms, cleanup_imported_row, import_rows, suggest_research_firms
from firmbook.services.repository import RepositoryConflictError


class FakeIntakeRepository:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self.batches: list[dict[str, Any]] = []
        self.companies: dict[str, dict[str, Any]] = {}
        self.links: list[tuple[str, str]] = []
        self.enqueued: list[tuple[list[str], str]] = []
        self.conflict_domains: set[str] = set()
        self.reject_emails: set[str] = set()
        self.cache: dict[str, Any] = {}

    async def create_import_batch(self, *, source_file: str, row_count: int) -> str:
        batch_id = f"batch-{len(self.batches) + 1}"
        self.batches.append({"id": batch_id, "source_file": source_file, "row_count": row_count})
        return batch_id

    async def upsert_merged_record(self, incoming: dict[str, Any], *, import_batch_id: str | None = None) -> dict[str, Any]:
        if incoming.get("email") in self.reject_emails:
            raise RepositoryConflictError("import batch does not exist")
        prepared = prepare_incoming_record(incoming)
        key = compute_dedup_key(prepared)
        for record in self.records:
            if key.kind != "none" and compute_dedup_key(record) == key:
                for field, value in prepared.items():
                    if not record.get(field):
                        record[field] = value
                return {"record": record, "created": False, "dedup_kind": key.kind}
        now = datetime.now(timezone.utc)
        record = {
            **prepared,
            "id": f"rec-{len(self.records) + 1}",
            "import_batch_id": import_batch_id,
            "company_id": None,
            "created_at": now,
            "updated_at": now,
        }
        self.records.append(record)
        return {"record": record, "created": True, "dedup_kind": key.kind}

    async def record_exists_for_domain(self, domain: str) -> bool:
        return any(record["domain"] == domain for record in self.records)

    async def existing_domains(self, domains: list[str]) -> set[str]:
        known = {record["domain"] for record in self.records} | set(self.companies)
        return set(domains) & known

    async def ai_cache_get(self, key: str) -> Any | None:
        return self.cache.get(key)

    async def ai_cache_set(self, key: str, value: Any) -> None:
        self.cache[key] = value

    async def upsert_company(self, *, company_name: str, domain: str) -> dict[str, Any]:
        if domain in self.conflict_domains:
            raise RepositoryConflictError("company already exists")
        company = self.companies.setdefault(domain, {"id": f"co-{len(self.companies) + 1}", "domain": domain})
        company["company_name"] = company_name
        return company

    async def link_record_company(self, *, record_id: str, company_id: str) -> None:
        self.links.append((record_id, company_id))

    async def enqueue_jobs(self, *, record_ids: list[str], job_type: Any) -> dict[str, int]:
        self.enqueued.append((record_ids, getattr(job_type, "value", job_type)))
        return {"enqueued": len(record_ids), "skipped_cached": 0, "skipped_active": 0}


def test_cleanup_moves_non_domain_value_into_company_name() -> None:
    cleaned, warnings = cleanup_imported_row({"domain": "Acme Consulting", "executive_name": "Jane Doe"})

    assert cleaned["domain"] == ""
    assert cleaned["company_name"] == "Acme Consulting"
    assert warnings == ["moved domain (not domain-like) to company_name"]


def test_cleanup_keeps_mapped_company_name_when_domain_is_not_a_domain() -> None:
    cleaned, warnings = cleanup_imported_row({"company_name": "Acme LLC", "domain": "Acme Consulting"})

    assert cleaned["domain"] == ""
    assert cleaned["company_name"] == "Acme LLC"
    assert warnings == []


def test_cleanup_repairs_swapped_columns_and_derives_domain() -> None:
    cleaned, warnings = cleanup_imported_row(
        {
            "company_name": "https://www.acme.io/about",
            "executive_name": "Jane@Acme.io",
            "exec_search_status": "Yes",
        }
    )

    assert cleaned["website"] == "acme.io"
    assert cleaned["company_name"] == ""
    assert cleaned["email"] == "jane@acme.io"
    assert cleaned["executive_name"] == ""
    assert cleaned["domain"] == "acme.io"
    assert cleaned["exec_search_status"] == "yes"
    assert len(warnings) == 2


def test_cleanup_moves_name_out_of_email_column() -> None:
    cleaned, warnings = cleanup_imported_row({"email": "Jane Doe", "domain": "www.acme.io"})

    assert cleaned["executive_name"] == "Jane Doe"
    assert cleaned["email"] == ""
    assert cleaned["domain"] == "acme.io"
    assert warnings == ["moved email (looked like name) to executive_name"]


def test_import_rows_merges_duplicates_and_never_fails_on_bad_domains() -> None:
    repository = FakeIntakeRepository()
    rows = [
        {"email": "jane@acme.io", "company_name": "Acme"},
        {"email": "JANE@acme.io", "executive_role": "CEO"},
        {"domain": "Acme Consulting"},
    ]

    result = asyncio.run(import_rows(repository, rows=rows, source_file="leads.csv"))

    assert result["import_batch_id"] == "batch-1"
    assert result["created"] == 2
    assert result["updated"] == 1
    assert result["dedup_counts"] == {"email": 2, "none": 1}
    assert result["errors"] == []
    assert result["warnings"] == [{"row": 2, "messages": ["moved domain (not domain-like) to company_name"]}]

    jane = repository.records[0]
    assert jane["company_name"] == "Acme"
    assert jane["executive_role"] == "CEO"
    assert jane["source_file"] == "leads.csv"
    assert repository.records[1]["domain"] == ""
    assert repository.records[1]["company_name"] == "Acme Consulting"


def test_import_rows_reports_rejected_rows_and_continues() -> None:
    repository = FakeIntakeRepository()
    repository.reject_emails.add("bad@acme.io")

    result = asyncio.run(
        import_rows(
            repository,
            rows=[{"email": "bad@acme.io"}, {"email": "good@acme.io"}],
            source_file="leads.csv",
        )
    )

    assert result["created"] == 1
    assert result["errors"] == [{"row": 0, "error": "import batch does not exist"}]


def test_add_research_firms_adds_only_picked_new_domains() -> None:
    repository = FakeIntakeRepository()
    repository.records.append({"id": "rec-existing", "domain": "known.io", "email": "", "executive_linkedin": ""})
    repository.conflict_domains.add("taken.io")

    result = asyncio.run(
        add_research_firms(
            repository,
            suggestions=[
                {"company_name": "New Co", "domain": "https://www.new.io", "notes": "Boutique", "sources": ["a.com"]},
                {"company_name": "Known", "domain": "known.io"},
                {"company_name": "Taken", "domain": "taken.io"},
                {"company_name": "Unpicked", "domain": "skip.io"},
            ],
            domains=["new.io", "KNOWN.io", "taken.io"],
            command="boutique firms",
        )
    )

    assert result["added_domains"] == ["new.io"]
    assert result["telemetry"] == {"suggested": 4, "filtered_existing": 2, "added": 1}

    added = repository.records[-1]
    assert added["domain"] == "new.io"
    assert added["source_file"] == "research:boutique firms"
    assert added["perplexity_research_notes"] == "Boutique\n\nSources:\na.com"
    assert repository.links == [(added["id"], "co-1")]
    assert repository.enqueued == [([added["id"]], "enrich_record")]


def test_import_of_no_rows_leaves_no_batch_behind() -> None:
    repository = FakeIntakeRepository()

    result = asyncio.run(import_rows(repository, rows=[], source_file="empty.csv"))

    assert result["import_batch_id"] is None
    assert result["created"] == result["updated"] == 0
    assert repository.batches == []


class FakeSuggestAIClient:
    def __init__(self, payload: dict[str, Any]) -> None:
        self.payload = payload
        self.research_queries: list[str] = []
        self.chat_inputs: list[str] = []

    async def research(self, query: str) -> str:
        self.research_queries.append(query)
        return "1. New Co (new.io) ..."

    async def chat_json(self, messages: list[dict[str, str]], *, temperature: float = 0.0) -> dict[str, Any]:
        self.chat_inputs.append(messages[-1]["content"])
        return self.payload


SUGGESTED = {
    "suggestions": [
        {"company_name": "New Co", "domain": "https://www.new.io/", "notes": "Boutique", "sources": ["a.com", " "]},
        {"company_name": "New Co again", "domain": "new.io"},
        {"company_name": "Known", "domain": "known.io"},
        {"company_name": "No site", "domain": "New Co Partners"},
    ]
}


def test_suggest_research_firms_dedupes_and_filters_known_domains() -> None:
    repository = FakeIntakeRepository()
    repository.records.append({"id": "rec-existing", "domain": "known.io"})
    ai_client = FakeSuggestAIClient(SUGGESTED)

    result = asyncio.run(
        suggest_research_firms(repository, ai_client, AICache(repository), command=" boutique fintech firms ")
    )

    assert result["suggestions"] == [
        {"company_name": "New Co", "domain": "new.io", "notes": "Boutique", "sources": ["a.com"]}
    ]
    assert result["telemetry"] == {"suggested": 2, "filtered_existing": 1}
    assert result["cached"] is False
    assert "boutique fintech firms" in ai_client.research_queries[0]
    assert ai_client.chat_inputs == ["1. New Co (new.io) ..."]


def test_suggest_research_firms_reuses_cached_suggestions() -> None:
    repository = FakeIntakeRepository()
    ai_client = FakeSuggestAIClient(SUGGESTED)
    cache = AICache(repository)

    asyncio.run(suggest_research_firms(repository, ai_client, cache, command="boutique firms"))
    repository.records.append({"id": "rec-new", "domain": "new.io"})
    again = asyncio.run(suggest_research_firms(repository, ai_client, cache, command="Boutique firms"))

    assert again["cached"] is True
    assert len(ai_client.research_queries) == 1
    assert [suggestion["domain"] for suggestion in again["suggestions"]] == ["known.io"]
    assert again["telemetry"] == {"suggested": 2, "filtered_existing": 1}


def test_suggest_research_firms_rejects_unexpected_extraction() -> None:
    repository = FakeIntakeRepository()
    ai_client = FakeSuggestAIClient({"suggestions": "none"})

    with pytest.raises(UpstreamError):
        asyncio.run(suggest_research_firms(repository, ai_client, AICache(repository), command="firms"))

    assert repository.cache == {}
