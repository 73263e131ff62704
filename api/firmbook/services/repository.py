from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from firmbook.core.config import get_settings
from firmbook.core.hashing import job_input_fingerprint
from firmbook.core.normalize import (
    clean,
    is_valid_domain_like,
    normalize_company_name,
    normalize_domain,
    normalize_linkedin,
    sanitize_domain,
)
from firmbook.core.states import (
    ExecSearchStatus,
    JobStatus,
    JobType,
    LifecycleState,
    sources_for,
    validate_job_transition,
)
from firmbook.services.dedupe import (
    MERGEABLE_RECORD_FIELDS,
    CompanyMergePlan,
    DedupKind,
    compute_dedup_key,
    dedup_lookups,
    merge_record_fields,
    plan_company_merge,
    prepare_incoming_record,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


SCHEMA_SQL = """
create table if not exists import_batches (
  id uuid primary key,
  source_file text not null default '',
  row_count int not null default 0,
  created_at timestamptz not null default now()
);

create table if not exists companies (
  id uuid primary key,
  company_name text not null default '',
  domain text not null default '',
  normalized_name text not null default '',
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  deleted_at timestamptz
);
create unique index if not exists companies_live_domain_uniq
  on companies (domain) where deleted_at is null and domain <> '';
create unique index if not exists companies_live_name_uniq
  on companies (normalized_name) where deleted_at is null and domain = '' and normalized_name <> '';
create index if not exists companies_lower_domain_idx on companies (lower(domain));

create table if not exists records (
  id uuid primary key,
  company_name text not null default '',
  domain text not null default '',
  exec_search_category text not null default '',
  exec_search_status text not null default 'unknown',
  perplexity_research_notes text not null default '',
  firm_niche text not null default '',
  executive_name text not null default '',
  executive_role text not null default '',
  executive_linkedin text not null default '',
  email text not null default '',
  email_template text not null default '',
  source_file text not null default '',
  raw_row_json text not null default '',
  import_batch_id uuid references import_batches (id),
  company_id uuid references companies (id),
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  deleted_at timestamptz
);
create index if not exists records_email_idx on records (lower(email));
create index if not exists records_exec_linkedin_idx on records (lower(executive_linkedin));
create index if not exists records_domain_exec_idx on records (lower(domain), lower(executive_name));
create index if not exists records_import_batch_idx on records (import_batch_id);
create index if not exists records_company_idx on records (company_id);

create table if not exists company_merge_log (
  id uuid primary key,
  domain text not null,
  canonical_company_id uuid,
  merged_company_ids jsonb not null default '[]'::jsonb,
  moved_record_ids jsonb not null default '[]'::jsonb,
  before jsonb not null default '{}'::jsonb,
  after jsonb not null default '{}'::jsonb,
  dry_run boolean not null,
  created_at timestamptz not null default now()
);

create table if not exists ai_jobs (
  id uuid primary key,
  record_id uuid not null references records (id) on delete cascade,
  job_type text not null,
  status text not null default 'queued',
  run_after timestamptz,
  attempts int not null default 0,
  last_error text,
  input_hash text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists ai_jobs_record_idx on ai_jobs (record_id);
create index if not exists ai_jobs_status_idx on ai_jobs (status, run_after);
create index if not exists ai_jobs_input_hash_idx on ai_jobs (record_id, job_type, input_hash);
create unique index if not exists ai_jobs_active_uniq
  on ai_jobs (record_id, job_type) where status in ('queued', 'running', 'rate_limited');

create table if not exists snippets (
  key text primary key,
  value text not null default '',
  updated_at timestamptz not null default now()
);

create table if not exists ai_cache (
  key text primary key,
  value_json jsonb not null,
  created_at timestamptz not null default now()
);
"""

RECORD_COLUMNS = """
  id::text as id,
  company_name,
  domain,
  exec_search_category,
  exec_search_status,
  perplexity_research_notes,
  firm_niche,
  executive_name,
  executive_role,
  executive_linkedin,
  email,
  email_template,
  source_file,
  raw_row_json,
  import_batch_id::text as import_batch_id,
  company_id::text as company_id,
  created_at,
  updated_at
"""

COMPANY_COLUMNS = """
  id::text as id,
  company_name,
  domain,
  normalized_name,
  created_at,
  updated_at,
  deleted_at
"""

JOB_COLUMNS = """
  id::text as id,
  record_id::text as record_id,
  job_type,
  status,
  run_after,
  attempts,
  last_error,
  input_hash,
  created_at,
  updated_at
"""

RECORD_PATCH_FIELDS = (
    "company_name",
    "domain",
    "exec_search_category",
    "exec_search_status",
    "perplexity_research_notes",
    "firm_niche",
    "executive_name",
    "executive_role",
    "executive_linkedin",
    "email",
    "email_template",
    "source_file",
)

_DEDUP_LOOKUP_SQL: dict[DedupKind, str] = {
    "email": f"select {RECORD_COLUMNS} from records where deleted_at is null and lower(email) = $1 limit 1",
    "linkedin": (
        f"select {RECORD_COLUMNS} from records "
        "where deleted_at is null and lower(executive_linkedin) = $1 limit 1"
    ),
    "domain_exec": (
        f"select {RECORD_COLUMNS} from records "
        "where deleted_at is null and lower(domain) = $1 and lower(executive_name) = $2 limit 1"
    ),
}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        await pool.fetchval("select 1")

    # Records

    async def list_records(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RECORD_COLUMNS}
            from records
            where deleted_at is null
            order by updated_at desc nulls last, created_at desc
            limit $1
            """,
            max(1, limit),
        )
        return [self._record_row_to_dict(row) for row in rows]

    async def get_record(self, record_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {RECORD_COLUMNS} from records where id = $1::uuid and deleted_at is null",
                record_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("record not found") from exc
        if not row:
            raise RepositoryNotFoundError("record not found")
        return self._record_row_to_dict(row)

    async def find_existing_record(self, incoming: dict[str, Any]) -> tuple[dict[str, Any], DedupKind] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._find_existing_record(conn=conn, incoming=prepare_incoming_record(incoming))

    async def upsert_merged_record(
        self,
        incoming: dict[str, Any],
        *,
        import_batch_id: str | None = None,
    ) -> dict[str, Any]:
        prepared = prepare_incoming_record(incoming)
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                match = await self._find_existing_record(conn=conn, incoming=prepared)
                if match is None:
                    row = await conn.fetchrow(
                        f"""
                        insert into records (
                          id,
                          company_name,
                          domain,
                          exec_search_category,
                          perplexity_research_notes,
                          firm_niche,
                          executive_name,
                          executive_role,
                          executive_linkedin,
                          email,
                          source_file,
                          raw_row_json,
                          exec_search_status,
                          email_template,
                          import_batch_id
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15::uuid)
                        returning {RECORD_COLUMNS}
                        """,
                        str(uuid4()),
                        *(prepared[field] for field in MERGEABLE_RECORD_FIELDS),
                        prepared["exec_search_status"],
                        prepared["email_template"],
                        import_batch_id,
                    )
                    record = self._record_row_to_dict(row)
                    return {"record": record, "created": True, "dedup_kind": compute_dedup_key(record).kind}

                existing, matched_kind = match
                merged = merge_record_fields(existing, prepared)
                row = await conn.fetchrow(
                    f"""
                    update records
                    set
                      company_name = $2,
                      domain = $3,
                      exec_search_category = $4,
                      perplexity_research_notes = $5,
                      firm_niche = $6,
                      executive_name = $7,
                      executive_role = $8,
                      executive_linkedin = $9,
                      email = $10,
                      source_file = $11,
                      raw_row_json = $12,
                      exec_search_status = case
                        when coalesce(nullif(exec_search_status, ''), 'unknown') = 'unknown'
                          then coalesce(nullif(nullif($13, ''), 'unknown'), nullif(exec_search_status, ''), 'unknown')
                        else exec_search_status
                      end,
                      email_template = coalesce(nullif(email_template, ''), nullif($14, ''), email_template),
                      updated_at = now()
                    where id = $1::uuid
                    returning {RECORD_COLUMNS}
                    """,
                    existing["id"],
                    *(merged[field] for field in MERGEABLE_RECORD_FIELDS),
                    prepared["exec_search_status"],
                    prepared["email_template"],
                )
                if not row:
                    raise RepositoryConflictError("matched record disappeared during merge")
                return {"record": self._record_row_to_dict(row), "created": False, "dedup_kind": matched_kind}
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryConflictError("import batch does not exist") from exc

    async def update_record(self, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(patch) - set(RECORD_PATCH_FIELDS))
        if unknown:
            raise RepositoryValidationError(f"unsupported record fields: {', '.join(unknown)}")

        values: list[Any] = []
        for field in RECORD_PATCH_FIELDS:
            value = patch.get(field)
            if value is None:
                values.append(None)
            elif field == "domain":
                values.append(sanitize_domain(value))
            elif field == "executive_linkedin":
                values.append(normalize_linkedin(value))
            elif field == "exec_search_status":
                values.append(ExecSearchStatus.coerce(value).value)
            else:
                values.append(clean(value))

        assignments = ",\n".join(
            f"{field} = coalesce(${index}, {field})" for index, field in enumerate(RECORD_PATCH_FIELDS, start=2)
        )
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update records
                set
                  {assignments},
                  updated_at = now()
                where id = $1::uuid and deleted_at is null
                returning {RECORD_COLUMNS}
                """,
                record_id,
                *values,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("record not found") from exc
        if not row:
            raise RepositoryNotFoundError("record not found")
        return self._record_row_to_dict(row)

    async def delete_records(self, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                "delete from records where id = any($1::uuid[]) returning id",
                record_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("record ids must be UUIDs") from exc
        return len(rows)

    async def record_exists_for_domain(self, domain: str) -> bool:
        normalized = normalize_domain(domain)
        if not normalized:
            return False
        pool = await self._get_pool()
        exists = await pool.fetchval(
            "select 1 from records where deleted_at is null and lower(domain) = $1 limit 1",
            normalized,
        )
        return bool(exists)

    async def existing_domains(self, domains: list[str]) -> set[str]:
        """Domains already held by a live company or a live record."""
        normalized = sorted({normalize_domain(domain) for domain in domains} - {""})
        if not normalized:
            return set()
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select lower(domain) as domain from companies
            where deleted_at is null and lower(domain) = any($1::text[])
            union
            select lower(domain) as domain from records
            where deleted_at is null and lower(domain) = any($1::text[])
            """,
            normalized,
        )
        return {row["domain"] for row in rows}

    async def link_record_company(self, *, record_id: str, company_id: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                "update records set company_id = $2::uuid where id = $1::uuid",
                record_id,
                company_id,
            )
        except (pg_exc.ForeignKeyViolationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def list_record_ids_for_filter(
        self,
        *,
        ids: list[str] | None = None,
        import_batch_id: str | None = None,
        has_domain: bool | None = None,
        missing_research_notes: bool | None = None,
        missing_exec_search_status: bool | None = None,
    ) -> list[str]:
        clauses = ["deleted_at is null"]
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if ids:
            clauses.append(f"id = any({bind(ids)}::uuid[])")
        if import_batch_id:
            clauses.append(f"import_batch_id = {bind(import_batch_id)}::uuid")
        if has_domain is True:
            clauses.append("coalesce(trim(domain), '') <> ''")
        if missing_research_notes is True:
            clauses.append("coalesce(trim(perplexity_research_notes), '') = ''")
        if missing_exec_search_status is True:
            clauses.append("coalesce(nullif(trim(exec_search_status), ''), 'unknown') = 'unknown'")

        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select id::text as id
                from records
                where {" and ".join(clauses)}
                order by updated_at desc
                """,
                *params,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("record filter ids must be UUIDs") from exc
        return [row["id"] for row in rows]

    # Import batches

    async def create_import_batch(self, *, source_file: str, row_count: int) -> str:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into import_batches (id, source_file, row_count)
            values ($1::uuid, $2, $3)
            returning id::text
            """,
            str(uuid4()),
            clean(source_file),
            row_count,
        )

    async def undo_latest_import(self) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                batch_id = await conn.fetchval(
                    """
                    select id::text
                    from import_batches
                    order by created_at desc
                    limit 1
                    for update
                    """
                )
                if not batch_id:
                    return {"batch_id": None, "deleted": 0}

                deleted = await conn.fetch(
                    "delete from records where import_batch_id = $1::uuid returning id",
                    batch_id,
                )
                await conn.execute("delete from import_batches where id = $1::uuid", batch_id)
                return {"batch_id": batch_id, "deleted": len(deleted)}

    # Companies

    async def upsert_company(self, *, company_name: str, domain: str) -> dict[str, Any]:
        name = clean(company_name)
        normalized_domain = sanitize_domain(domain)
        normalized_name = normalize_company_name(name)

        if normalized_domain:
            query = f"""
                insert into companies (id, company_name, domain, normalized_name)
                values ($1::uuid, $2, $3, $4)
                on conflict (domain) where deleted_at is null and domain <> ''
                do update set
                  company_name = coalesce(nullif(excluded.company_name, ''), companies.company_name),
                  normalized_name = coalesce(nullif(excluded.normalized_name, ''), companies.normalized_name),
                  updated_at = now()
                returning {COMPANY_COLUMNS}
            """
        elif normalized_name:
            query = f"""
                insert into companies (id, company_name, domain, normalized_name)
                values ($1::uuid, $2, $3, $4)
                on conflict (normalized_name) where deleted_at is null and domain = '' and normalized_name <> ''
                do update set
                  company_name = coalesce(nullif(excluded.company_name, ''), companies.company_name),
                  updated_at = now()
                returning {COMPANY_COLUMNS}
            """
        else:
            query = f"""
                insert into companies (id, company_name, domain, normalized_name)
                values ($1::uuid, $2, $3, $4)
                returning {COMPANY_COLUMNS}
            """

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(query, str(uuid4()), name, normalized_domain, normalized_name)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("company already exists") from exc
        return self._company_row_to_dict(row)

    async def find_duplicate_domains(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        company_rows = await pool.fetch(
            """
            select
              lower(domain) as domain,
              array_agg(id::text order by created_at) as company_ids,
              count(*)::int as company_count
            from companies
            where deleted_at is null and domain <> ''
            group by lower(domain)
            having count(*) > 1
            order by count(*) desc
            limit $1
            """,
            bounded_limit,
        )
        record_rows = await pool.fetch(
            """
            select
              lower(domain) as domain,
              array_agg(id::text order by created_at) as record_ids,
              count(*)::int as record_count
            from records
            where deleted_at is null and domain <> ''
            group by lower(domain)
            having count(*) > 1
            order by count(*) desc
            limit $1
            """,
            bounded_limit,
        )

        by_domain: dict[str, dict[str, Any]] = {}
        for row in company_rows:
            by_domain[row["domain"]] = {
                "domain": row["domain"],
                "company_ids": list(row["company_ids"] or []),
                "record_ids": [],
                "company_count": row["company_count"],
                "record_count": 0,
            }
        for row in record_rows:
            entry = by_domain.setdefault(
                row["domain"],
                {"domain": row["domain"], "company_ids": [], "record_ids": [], "company_count": 0, "record_count": 0},
            )
            entry["record_ids"] = list(row["record_ids"] or [])
            entry["record_count"] = row["record_count"]

        return sorted(
            by_domain.values(),
            key=lambda entry: (-(entry["company_count"] + entry["record_count"]), entry["domain"]),
        )

    async def merge_companies_by_domain(self, *, domain: str, dry_run: bool) -> dict[str, Any]:
        normalized = normalize_domain(domain)
        if not normalized or not is_valid_domain_like(normalized):
            raise RepositoryValidationError("invalid domain")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if dry_run:
                companies = await self._fetch_live_companies_for_domain(conn=conn, domain=normalized, lock=False)
                plan = plan_company_merge(normalized, companies)
                if plan is None:
                    return self._noop_merge_result(normalized, companies, dry_run=True)
                moved_record_ids = await self._fetch_merge_record_ids(conn=conn, plan=plan)
                log_id = await self._insert_company_merge_log(
                    conn=conn,
                    plan=plan,
                    moved_record_ids=moved_record_ids,
                    dry_run=True,
                )
                return self._merge_result(plan, moved_record_ids, dry_run=True, log_id=log_id)

            async with conn.transaction():
                companies = await self._fetch_live_companies_for_domain(conn=conn, domain=normalized, lock=True)
                plan = plan_company_merge(normalized, companies)
                if plan is None:
                    return self._noop_merge_result(normalized, companies, dry_run=False)

                await conn.execute(
                    """
                    update companies
                    set company_name = $2, normalized_name = $3, updated_at = now(), deleted_at = null
                    where id = $1::uuid
                    """,
                    plan.canonical["id"],
                    plan.merged_company_name,
                    plan.merged_normalized_name,
                )
                moved_rows = await conn.fetch(
                    """
                    update records
                    set company_id = $2::uuid
                    where deleted_at is null
                      and (company_id = any($1::uuid[]) or lower(domain) = $3)
                    returning id::text as id
                    """,
                    plan.participant_ids,
                    plan.canonical["id"],
                    normalized,
                )
                moved_record_ids = sorted(row["id"] for row in moved_rows)
                await conn.execute(
                    """
                    update companies
                    set deleted_at = now(), updated_at = now()
                    where id = any($1::uuid[])
                    """,
                    plan.dupe_ids,
                )
                log_id = await self._insert_company_merge_log(
                    conn=conn,
                    plan=plan,
                    moved_record_ids=moved_record_ids,
                    dry_run=False,
                )
                logger.info(
                    "company merge applied domain=%s canonical=%s tombstoned=%s moved_records=%s",
                    normalized,
                    plan.canonical["id"],
                    len(plan.dupes),
                    len(moved_record_ids),
                )
                return self._merge_result(plan, moved_record_ids, dry_run=False, log_id=log_id)

    async def list_company_merge_log(self, *, domain: str | None, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        normalized = normalize_domain(domain) if domain else None
        rows = await pool.fetch(
            """
            select
              id::text as id,
              domain,
              canonical_company_id::text as canonical_company_id,
              merged_company_ids,
              moved_record_ids,
              before,
              after,
              dry_run,
              created_at
            from company_merge_log
            where ($1::text is null or domain = $1)
            order by created_at desc
            limit $2
            """,
            normalized,
            max(1, min(limit, 500)),
        )
        return [
            {
                "id": row["id"],
                "domain": row["domain"],
                "canonical_company_id": row["canonical_company_id"],
                "merged_company_ids": self._coerce_json_list(row["merged_company_ids"]),
                "moved_record_ids": self._coerce_json_list(row["moved_record_ids"]),
                "before": self._coerce_json_dict(row["before"]),
                "after": self._coerce_json_dict(row["after"]),
                "dry_run": row["dry_run"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def _fetch_live_companies_for_domain(
        self,
        *,
        conn: asyncpg.Connection,
        domain: str,
        lock: bool,
    ) -> list[dict[str, Any]]:
        rows = await conn.fetch(
            f"""
            select {COMPANY_COLUMNS}
            from companies
            where deleted_at is null and lower(domain) = $1
            order by updated_at desc nulls last, created_at desc
            {"for update" if lock else ""}
            """,
            domain,
        )
        return [self._company_row_to_dict(row) for row in rows]

    async def _fetch_merge_record_ids(self, *, conn: asyncpg.Connection, plan: CompanyMergePlan) -> list[str]:
        rows = await conn.fetch(
            """
            select id::text as id
            from records
            where deleted_at is null
              and (company_id = any($1::uuid[]) or lower(domain) = $2)
            """,
            plan.participant_ids,
            plan.domain,
        )
        return sorted(row["id"] for row in rows)

    async def _insert_company_merge_log(
        self,
        *,
        conn: asyncpg.Connection,
        plan: CompanyMergePlan,
        moved_record_ids: list[str],
        dry_run: bool,
    ) -> str:
        return await conn.fetchval(
            """
            insert into company_merge_log (
              id,
              domain,
              canonical_company_id,
              merged_company_ids,
              moved_record_ids,
              before,
              after,
              dry_run
            )
            values ($1::uuid, $2, $3::uuid, $4::jsonb, $5::jsonb, $6::jsonb, $7::jsonb, $8)
            returning id::text
            """,
            str(uuid4()),
            plan.domain,
            plan.canonical["id"],
            json.dumps(plan.participant_ids),
            json.dumps(moved_record_ids),
            json.dumps(plan.before()),
            json.dumps(plan.after()),
            dry_run,
        )

    @staticmethod
    def _merge_result(
        plan: CompanyMergePlan,
        moved_record_ids: list[str],
        *,
        dry_run: bool,
        log_id: str | None,
    ) -> dict[str, Any]:
        return {
            "domain": plan.domain,
            "canonical_company_id": plan.canonical["id"],
            "merged_company_ids": plan.participant_ids,
            "moved_record_ids": moved_record_ids,
            "deleted_company_ids": plan.dupe_ids,
            "dry_run": dry_run,
            "log_id": log_id,
        }

    @staticmethod
    def _noop_merge_result(domain: str, companies: list[dict[str, Any]], *, dry_run: bool) -> dict[str, Any]:
        return {
            "domain": domain,
            "canonical_company_id": companies[0]["id"] if companies else None,
            "merged_company_ids": [row["id"] for row in companies],
            "moved_record_ids": [],
            "deleted_company_ids": [],
            "dry_run": dry_run,
            "log_id": None,
        }

    # Jobs

    async def enqueue_jobs(self, *, record_ids: list[str], job_type: JobType | str) -> dict[str, int]:
        resolved_type = JobType(job_type)
        counts = {"enqueued": 0, "skipped_cached": 0, "skipped_active": 0}
        if not record_ids:
            return counts

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"select {RECORD_COLUMNS} from records where id = any($1::uuid[]) and deleted_at is null",
                    record_ids,
                )
                records_by_id = {row["id"]: self._record_row_to_dict(row) for row in rows}

                for record_id in record_ids:
                    record = records_by_id.get(record_id)
                    if record is None:
                        continue
                    input_hash = job_input_fingerprint(resolved_type, record)

                    cached = await conn.fetchval(
                        """
                        select 1
                        from ai_jobs
                        where record_id = $1::uuid
                          and job_type = $2
                          and status = 'succeeded'
                          and input_hash = $3
                        limit 1
                        """,
                        record_id,
                        resolved_type.value,
                        input_hash,
                    )
                    if cached:
                        counts["skipped_cached"] += 1
                        continue

                    # ai_jobs_active_uniq turns a concurrent duplicate into a no-op.
                    job_id = await conn.fetchval(
                        """
                        insert into ai_jobs (id, record_id, job_type, status, run_after, attempts, input_hash)
                        values ($1::uuid, $2::uuid, $3, 'queued', now(), 0, $4)
                        on conflict do nothing
                        returning id::text
                        """,
                        str(uuid4()),
                        record_id,
                        resolved_type.value,
                        input_hash,
                    )
                    if job_id:
                        counts["enqueued"] += 1
                    else:
                        counts["skipped_active"] += 1
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("record ids must be UUIDs") from exc

        return counts

    async def claim_next_job(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            with next_job as (
              select id
              from ai_jobs
              where status = any($1::text[])
                and (run_after is null or run_after <= now())
              order by run_after asc nulls first, created_at asc
              limit 1
              for update skip locked
            )
            update ai_jobs j
            set
              status = 'running',
              attempts = j.attempts + 1,
              last_error = null,
              updated_at = now()
            from next_job
            where j.id = next_job.id
            returning {", ".join(f"j.{line.strip()}" for line in JOB_COLUMNS.strip().split(","))}
            """,
            sorted(status.value for status in JobStatus if status.is_claimable),
        )
        return self._job_row_to_dict(row) if row else None

    async def complete_job(
        self,
        job_id: str,
        *,
        status: JobStatus | str,
        last_error: str | None = None,
        backoff_seconds: int | None = None,
    ) -> dict[str, Any] | None:
        """Record the outcome of a running job.

        Returns ``None`` when the job is no longer running, which only happens
        when it was cancelled while executing.
        """
        target = JobStatus(status)
        validate_job_transition(from_status=JobStatus.RUNNING, to_status=target)

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update ai_jobs
                set
                  status = $2,
                  last_error = $3,
                  run_after = case
                    when $4::int is null then run_after
                    else now() + ($4::int * interval '1 second')
                  end,
                  updated_at = now()
                where id = $1::uuid and status = 'running'
                returning {JOB_COLUMNS}
                """,
                job_id,
                target.value,
                last_error,
                backoff_seconds,
            )
            if row:
                return self._job_row_to_dict(row)
            exists = await pool.fetchval("select 1 from ai_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not exists:
            raise RepositoryNotFoundError("job not found")
        return None

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from ai_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def cancel_jobs(self, *, statuses: list[JobStatus | str]) -> int:
        cancellable = set(sources_for(JobStatus.CANCELLED))
        requested: list[str] = []
        for status in statuses:
            value = JobStatus(status).value
            if value not in cancellable:
                raise RepositoryValidationError(f"jobs in status {value} cannot be cancelled")
            requested.append(value)
        if not requested:
            return 0

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update ai_jobs
            set status = 'cancelled', updated_at = now()
            where status = any($1::text[])
            returning id
            """,
            sorted(set(requested)),
        )
        return len(rows)

    async def list_job_status_by_record_ids(self, record_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not record_ids:
            return {}
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select distinct on (record_id)
                  record_id::text as record_id,
                  status,
                  updated_at
                from ai_jobs
                where record_id = any($1::uuid[])
                order by record_id, updated_at desc
                """,
                record_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("record ids must be UUIDs") from exc
        return {row["record_id"]: {"status": row["status"], "updated_at": row["updated_at"]} for row in rows}

    # Snippets

    async def list_snippets(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch("select key, value, updated_at from snippets order by key asc")
        return [{"key": row["key"], "value": row["value"] or "", "updated_at": row["updated_at"]} for row in rows]

    async def upsert_snippet(self, *, key: str, value: str) -> dict[str, Any]:
        normalized_key = clean(key)
        if not normalized_key:
            raise RepositoryValidationError("snippet key must be a non-empty string")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into snippets (key, value, updated_at)
            values ($1, $2, now())
            on conflict (key) do update set value = excluded.value, updated_at = now()
            returning key, value, updated_at
            """,
            normalized_key,
            value,
        )
        return {"key": row["key"], "value": row["value"] or "", "updated_at": row["updated_at"]}

    async def delete_snippet(self, key: str) -> bool:
        pool = await self._get_pool()
        deleted = await pool.fetchval("delete from snippets where key = $1 returning key", clean(key))
        return deleted is not None

    # AI cache

    async def ai_cache_get(self, key: str) -> Any | None:
        pool = await self._get_pool()
        value = await pool.fetchval("select value_json from ai_cache where key = $1", key)
        if value is None:
            return None
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    async def ai_cache_set(self, key: str, value: Any) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into ai_cache (key, value_json)
            values ($1, $2::jsonb)
            on conflict (key) do update set value_json = excluded.value_json
            """,
            key,
            json.dumps(value),
        )

    async def _find_existing_record(
        self,
        *,
        conn: asyncpg.Connection,
        incoming: dict[str, Any],
    ) -> tuple[dict[str, Any], DedupKind] | None:
        for kind, args in dedup_lookups(incoming):
            row = await conn.fetchrow(_DEDUP_LOOKUP_SQL[kind], *args)
            if row:
                return self._record_row_to_dict(row), kind
        return None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

        try:
            await pool.execute(SCHEMA_SQL)
        except Exception as exc:  # pragma: no cover - depends on environment
            await pool.close()
            raise RepositoryUnavailableError("database schema could not be ensured") from exc

        self._pool = pool
        return self._pool

    @staticmethod
    def _record_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        record = {field: row[field] or "" for field in MERGEABLE_RECORD_FIELDS}
        record.update(
            {
                "id": row["id"],
                "exec_search_status": ExecSearchStatus.coerce(row["exec_search_status"]).value,
                "email_template": row["email_template"] or "",
                "import_batch_id": row["import_batch_id"],
                "company_id": row["company_id"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
        )
        return record

    @staticmethod
    def _company_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "company_name": row["company_name"] or "",
            "domain": row["domain"] or "",
            "normalized_name": row["normalized_name"] or "",
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "deleted_at": row["deleted_at"],
            "state": LifecycleState.from_deleted_at(row["deleted_at"]).value,
        }

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "record_id": row["record_id"],
            "job_type": row["job_type"],
            "status": row["status"],
            "run_after": row["run_after"],
            "attempts": int(row["attempts"] or 0),
            "last_error": row["last_error"],
            "input_hash": row["input_hash"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _coerce_json_list(value: Any) -> list[Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        return value if isinstance(value, list) else []

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
