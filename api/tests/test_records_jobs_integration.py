from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
import pytest

from firmbook.core.states import JobStatus, JobType
from firmbook.services.repository import PostgresRepository

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("FB_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require FB_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_integration_tables(database_url))


def test_upsert_merges_complementary_imports_into_one_record(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        first = await repository.upsert_merged_record(
            {"email": "Jane@Acme.io", "company_name": "Acme", "exec_search_status": "unknown"}
        )
        second = await repository.upsert_merged_record(
            {
                "email": "jane@acme.io",
                "company_name": "Acme Holdings",
                "executive_role": "CEO",
                "domain": "https://www.acme.io/",
                "exec_search_status": "yes",
                "email_template": "Hi {Executive_Name}",
            }
        )

        assert first["created"] is True
        assert second["created"] is False
        assert second["dedup_kind"] == "email"
        assert second["record"]["id"] == first["record"]["id"]
        merged = await repository.get_record(first["record"]["id"])
        assert merged["company_name"] == "Acme"
        assert merged["executive_role"] == "CEO"
        assert merged["domain"] == "acme.io"
        assert merged["exec_search_status"] == "yes"
        assert merged["email_template"] == "Hi {Executive_Name}"

        third = await repository.upsert_merged_record({"email": "jane@acme.io", "exec_search_status": "no"})
        assert third["record"]["exec_search_status"] == "yes"

    _run(_with_repository(database_url, scenario))
    assert _run(_fetchval(database_url, "select count(*) from records")) == 1


def test_import_with_non_domain_value_stores_empty_domain(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        result = await repository.upsert_merged_record({"domain": "Acme Consulting", "executive_name": "Jane"})
        assert result["created"] is True
        assert result["record"]["domain"] == ""
        assert result["dedup_kind"] == "none"

    _run(_with_repository(database_url, scenario))


def test_undo_latest_import_removes_only_newest_batch(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        older = await repository.create_import_batch(source_file="a.csv", row_count=1)
        await repository.upsert_merged_record({"email": "a@acme.io"}, import_batch_id=older)
        await _execute_on(repository, "update import_batches set created_at = now() - interval '1 day'")
        newer = await repository.create_import_batch(source_file="b.csv", row_count=2)
        await repository.upsert_merged_record({"email": "b@acme.io"}, import_batch_id=newer)
        await repository.upsert_merged_record({"email": "c@acme.io"}, import_batch_id=newer)
        # A matched record keeps its original batch.
        await repository.upsert_merged_record({"email": "a@acme.io", "firm_niche": "x"}, import_batch_id=newer)

        result = await repository.undo_latest_import()

        assert result == {"batch_id": newer, "deleted": 2}
        remaining = await repository.list_records(limit=10)
        assert [record["email"] for record in remaining] == ["a@acme.io"]

    _run(_with_repository(database_url, scenario))


def test_enqueue_is_idempotent_per_input_fingerprint(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        created = await repository.upsert_merged_record({"email": "jane@acme.io", "domain": "acme.io"})
        record_id = created["record"]["id"]

        first = await repository.enqueue_jobs(record_ids=[record_id], job_type=JobType.ENRICH_RECORD)
        second = await repository.enqueue_jobs(record_ids=[record_id], job_type=JobType.ENRICH_RECORD)
        assert first == {"enqueued": 1, "skipped_cached": 0, "skipped_active": 0}
        assert second == {"enqueued": 0, "skipped_cached": 0, "skipped_active": 1}

        job = await repository.claim_next_job()
        assert job is not None
        assert job["attempts"] == 1
        await repository.complete_job(job["id"], status=JobStatus.SUCCEEDED)

        cached = await repository.enqueue_jobs(record_ids=[record_id], job_type=JobType.ENRICH_RECORD)
        assert cached == {"enqueued": 0, "skipped_cached": 1, "skipped_active": 0}

        await repository.update_record(record_id, {"domain": "acme.com"})
        changed = await repository.enqueue_jobs(record_ids=[record_id], job_type=JobType.ENRICH_RECORD)
        assert changed["enqueued"] == 1

    _run(_with_repository(database_url, scenario))


def test_concurrent_claims_never_return_the_same_job(database_url: str) -> None:
    async def scenario() -> list[str]:
        seed = PostgresRepository(database_url, 1, 2)
        first = PostgresRepository(database_url, 1, 4)
        second = PostgresRepository(database_url, 1, 4)
        try:
            record_ids = []
            for index in range(8):
                created = await seed.upsert_merged_record({"email": f"exec{index}@acme.io"})
                record_ids.append(created["record"]["id"])
            await seed.enqueue_jobs(record_ids=record_ids, job_type=JobType.VERIFY_RECORD)
            await first.ping()
            await second.ping()

            async def drain(repository: PostgresRepository) -> list[str]:
                claimed: list[str] = []
                while True:
                    job = await repository.claim_next_job()
                    if job is None:
                        return claimed
                    claimed.append(job["id"])

            results = await asyncio.gather(drain(first), drain(second), drain(first), drain(second))
            return [job_id for batch in results for job_id in batch]
        finally:
            await seed.close()
            await first.close()
            await second.close()

    claimed = _run(scenario())

    assert len(claimed) == 8
    assert len(set(claimed)) == 8
    assert _run(_fetchval(database_url, "select count(*) from ai_jobs where attempts = 1 and status = 'running'")) == 8


def test_rate_limited_job_waits_for_run_after(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        created = await repository.upsert_merged_record({"email": "jane@acme.io"})
        await repository.enqueue_jobs(record_ids=[created["record"]["id"]], job_type=JobType.VERIFY_RECORD)

        job = await repository.claim_next_job()
        assert job is not None
        stored = await repository.complete_job(
            job["id"],
            status=JobStatus.RATE_LIMITED,
            last_error="openai error: slow down",
            backoff_seconds=60,
        )
        assert stored is not None
        assert stored["status"] == "rate_limited"
        assert await repository.claim_next_job() is None

        await _execute_on(repository, "update ai_jobs set run_after = now() - interval '1 second'")
        reclaimed = await repository.claim_next_job()
        assert reclaimed is not None
        assert reclaimed["id"] == job["id"]
        assert reclaimed["attempts"] == 2
        assert reclaimed["last_error"] is None

    _run(_with_repository(database_url, scenario))


def test_cancel_jobs_only_touches_requested_statuses(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        ids = []
        for email in ("a@acme.io", "b@acme.io"):
            created = await repository.upsert_merged_record({"email": email})
            ids.append(created["record"]["id"])
        await repository.enqueue_jobs(record_ids=ids, job_type=JobType.VERIFY_RECORD)
        running = await repository.claim_next_job()
        assert running is not None

        assert await repository.cancel_jobs(statuses=[JobStatus.QUEUED, JobStatus.RATE_LIMITED]) == 1
        assert (await repository.get_job(running["id"]))["status"] == "running"
        assert await repository.cancel_jobs(statuses=[JobStatus.RUNNING]) == 1
        assert await repository.complete_job(running["id"], status=JobStatus.SUCCEEDED) is None

    _run(_with_repository(database_url, scenario))


def test_company_merge_dry_run_then_apply(database_url: str) -> None:
    older_id = str(uuid4())
    newer_id = str(uuid4())
    _run(
        _execute(
            database_url,
            """
            insert into companies (id, company_name, domain, normalized_name, created_at, updated_at)
            values
              ($1::uuid, 'Acme Holdings', 'Acme.io', 'acme holdings', now() - interval '3 days', now() - interval '2 days'),
              ($2::uuid, '', 'acme.io', '', now() - interval '5 days', now())
            """,
            older_id,
            newer_id,
        )
    )

    async def scenario(repository: PostgresRepository) -> None:
        linked = await repository.upsert_merged_record({"email": "jane@acme.io", "company_name": "Acme"})
        await repository.link_record_company(record_id=linked["record"]["id"], company_id=older_id)
        by_domain = await repository.upsert_merged_record({"email": "joe@acme.io", "domain": "acme.io"})

        report = await repository.find_duplicate_domains(limit=10)
        assert report[0]["domain"] == "acme.io"
        assert sorted(report[0]["company_ids"]) == sorted([older_id, newer_id])

        dry = await repository.merge_companies_by_domain(domain="ACME.io", dry_run=True)
        assert dry["dry_run"] is True
        assert dry["canonical_company_id"] == newer_id
        assert dry["deleted_company_ids"] == [older_id]
        assert sorted(dry["moved_record_ids"]) == sorted([linked["record"]["id"], by_domain["record"]["id"]])
        assert dry["log_id"]

        applied = await repository.merge_companies_by_domain(domain="acme.io", dry_run=False)
        assert applied["dry_run"] is False
        assert applied["canonical_company_id"] == newer_id

        again = await repository.merge_companies_by_domain(domain="acme.io", dry_run=False)
        assert again["log_id"] is None
        assert again["deleted_company_ids"] == []

        log = await repository.list_company_merge_log(domain="acme.io", limit=10)
        assert [entry["dry_run"] for entry in log] == [False, True]
        assert log[0]["after"]["canonical"]["company_name"] == "Acme Holdings"
        assert log[0]["after"]["dupes"][0]["state"] == "tombstoned"

    _run(_with_repository(database_url, scenario))

    assert _run(_fetchval(database_url, "select count(*) from companies where deleted_at is null")) == 1
    assert _run(
        _fetchval(
            database_url,
            "select company_name from companies where id = $1::uuid and deleted_at is null",
            newer_id,
        )
    ) == "Acme Holdings"
    assert _run(
        _fetchval(database_url, "select count(*) from records where company_id = $1::uuid", newer_id)
    ) == 2


def test_company_merge_rejects_invalid_domain(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        from firmbook.services.repository import RepositoryValidationError

        with pytest.raises(RepositoryValidationError):
            await repository.merge_companies_by_domain(domain="Acme Consulting", dry_run=True)

    _run(_with_repository(database_url, scenario))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _with_repository(
    database_url: str,
    scenario: Callable[[PostgresRepository], Awaitable[None]],
) -> None:
    repository = PostgresRepository(database_url, 1, 4)
    try:
        await scenario(repository)
    finally:
        await repository.close()


async def _execute_on(repository: PostgresRepository, query: str, *args: Any) -> None:
    pool = await repository._get_pool()
    await pool.execute(query, *args)


async def _truncate_integration_tables(database_url: str) -> None:
    repository = PostgresRepository(database_url, 1, 1)
    try:
        await _execute_on(
            repository,
            """
            truncate table
              ai_jobs,
              company_merge_log,
              records,
              companies,
              import_batches,
              snippets,
              ai_cache
            restart identity cascade
            """,
        )
    finally:
        await repository.close()


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()
