from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from firmbook.core.normalize import clean, sanitize_domain
from firmbook.core.states import JobType
from firmbook.services.ai import UpstreamError, get_ai_client
from firmbook.services.ai_cache import AICache, build_cache_key
from firmbook.services.repository import get_repository

logger = logging.getLogger(__name__)

RESEARCH_NOTES_SEPARATOR = "\n\n---\n\n"
EMAIL_TEMPLATE_CACHE_FEATURE = "email-template"
EMAIL_TEMPLATE_CACHE_VERSION = "v1"
RESEARCH_CACHE_NAMESPACE = "px"
RESEARCH_CACHE_VERSION = "v1"

VERIFY_SYSTEM_PROMPT = (
    "Decide if this firm is likely currently running an executive search/leadership hiring effort "
    "based on the record context. Output JSON with {status: unknown|yes|no, reason: short}. "
    "Be conservative: use unknown unless evidence indicates yes/no."
)
INFER_DOMAIN_SYSTEM_PROMPT = (
    "Infer the primary website domain of this firm. Output JSON {domain}. "
    "Use an empty string unless you are confident."
)
FIRM_NICHE_SYSTEM_PROMPT = "Describe this firm's niche in one short phrase. Output JSON {firm_niche}."
EMAIL_TEMPLATE_SYSTEM_PROMPT = (
    "Draft a concise cold email template. Use these placeholders exactly: {Executive_Name}, "
    "{Company_Name}, {Domain}, {Executive_Role}. Keep under 120 words. Output JSON {email_template}."
)


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class StepResult:
    name: str
    outcome: StepOutcome
    reason: str | None = None
    output: dict[str, Any] | None = None


@dataclass(slots=True)
class JobExecution:
    job_type: JobType
    record_id: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def skipped_steps(self) -> list[str]:
        return [step.name for step in self.steps if step.outcome == StepOutcome.SKIPPED]

    def summary(self) -> list[dict[str, Any]]:
        return [{"name": step.name, "outcome": step.outcome.value, "reason": step.reason} for step in self.steps]


class VerifyDecision(BaseModel):
    status: Literal["unknown", "yes", "no"]
    reason: str = ""


class InferredDomain(BaseModel):
    domain: str = ""


class FirmNiche(BaseModel):
    firm_niche: str = ""


class EmailTemplate(BaseModel):
    email_template: str = ""


class RecordJobExecutor:
    """Runs queued AI jobs, and single AI actions on demand, against a record.

    Upstream failures propagate as ``UpstreamError`` so the caller can apply
    the queue's backoff policy; only the research step downgrades an auth
    failure to a skipped step.
    """

    def __init__(self, repository: Any, ai_client: Any, cache: AICache) -> None:
        self.repository = repository
        self.ai_client = ai_client
        self.cache = cache

    async def execute(self, job: dict[str, Any]) -> JobExecution:
        job_type = JobType(job["job_type"])
        record = await self.repository.get_record(job["record_id"])
        execution = JobExecution(job_type=job_type, record_id=record["id"])

        if job_type == JobType.VERIFY_RECORD:
            await self._verify(record, execution)
            return execution

        record = await self._infer_domain(record, execution)
        record = await self._firm_niche(record, execution)
        record = await self._draft_email_template(record, execution)
        await self._research_notes(record, execution)
        return execution

    async def run_step(self, record_id: str, name: str) -> tuple[dict[str, Any], StepResult]:
        """Run one job step against a record outside the queue.

        Returns the record as left by the step together with the step result.
        """
        steps = {
            "verify_exec_search": self._verify,
            "infer_domain": self._infer_domain,
            "firm_niche": self._firm_niche,
            "draft_email_template": self._draft_email_template,
            "research_notes": self._research_notes,
        }
        if name not in steps:
            raise ValueError(f"unknown step: {name}")

        record = await self.repository.get_record(record_id)
        job_type = JobType.VERIFY_RECORD if name == "verify_exec_search" else JobType.ENRICH_RECORD
        execution = JobExecution(job_type=job_type, record_id=record["id"])
        updated = await steps[name](record, execution)
        return updated, execution.steps[-1]

    async def categorize(self, record_id: str) -> dict[str, Any]:
        record = await self.repository.get_record(record_id)
        text, cached = await self._cached_research(
            record,
            "categorize",
            [
                "Categorize this firm in 1-3 words (e.g., staffing, executive search, recruiting, "
                "consultancy, SaaS, agency).",
                *_firm_lines(record),
                "Provide: category on first line, then 3 bullets of evidence.",
            ],
        )
        category = next((line.strip() for line in text.splitlines() if line.strip()), "")
        return {"category": category, "text": text, "cached": cached}

    async def deep_notes(self, record_id: str) -> dict[str, Any]:
        """Append long-form research notes to the record."""
        record = await self.repository.get_record(record_id)
        text, cached = await self._cached_research(
            record,
            "deep-notes",
            [
                *_firm_lines(record),
                "Task: Write deep research notes (8-12 bullets) about what the firm does, customers, "
                "positioning, and hiring signals. Include any relevant leadership/executive search signals.",
            ],
        )
        if text:
            notes = RESEARCH_NOTES_SEPARATOR.join(
                part for part in (record["perplexity_research_notes"], text) if part
            )
            record = await self.repository.update_record(record["id"], {"perplexity_research_notes": notes})
        return {"record": record, "research": text, "cached": cached}

    async def executives(self, record_id: str) -> dict[str, Any]:
        record = await self.repository.get_record(record_id)
        text, cached = await self._cached_research(
            record,
            "executives",
            [
                "Find key executives for this firm and provide names + roles + any LinkedIn/website "
                "citations if available.",
                *_firm_lines(record),
                "Output: 5-10 bullets, each: Name, Role, Source URL (if found).",
            ],
        )
        return {"executives": text, "cached": cached}

    async def _cached_research(self, record: dict[str, Any], feature: str, lines: list[str]) -> tuple[str, bool]:
        cache_key = build_cache_key(
            feature,
            RESEARCH_CACHE_VERSION,
            record["id"],
            record["updated_at"],
            namespace=RESEARCH_CACHE_NAMESPACE,
        )
        cached = await self.cache.get(cache_key)
        if isinstance(cached, dict) and isinstance(cached.get("text"), str):
            return cached["text"], True

        text = clean(await self.ai_client.research("\n".join(lines)))
        await self.cache.set(cache_key, {"text": text})
        return text, False

    async def _verify(self, record: dict[str, Any], execution: JobExecution) -> dict[str, Any]:
        context = {
            "company_name": record["company_name"],
            "domain": record["domain"],
            "exec_search_category": record["exec_search_category"],
            "firm_niche": record["firm_niche"],
            "executive_name": record["executive_name"],
            "executive_role": record["executive_role"],
            "executive_linkedin": record["executive_linkedin"],
            "email": record["email"],
            "notes": record["perplexity_research_notes"],
        }
        decision = await self._chat(VerifyDecision, VERIFY_SYSTEM_PROMPT, context)
        updated = await self.repository.update_record(record["id"], {"exec_search_status": decision.status})
        execution.steps.append(
            StepResult(
                name="verify_exec_search",
                outcome=StepOutcome.SUCCEEDED,
                reason=decision.reason or None,
                output=decision.model_dump(),
            )
        )
        return updated

    async def _infer_domain(self, record: dict[str, Any], execution: JobExecution) -> dict[str, Any]:
        if record["domain"]:
            execution.steps.append(StepResult("infer_domain", StepOutcome.SKIPPED, "domain already set"))
            return record

        inferred = await self._chat(
            InferredDomain,
            INFER_DOMAIN_SYSTEM_PROMPT,
            {
                "company_name": record["company_name"],
                "email": record["email"],
                "executive_linkedin": record["executive_linkedin"],
            },
        )
        domain = sanitize_domain(inferred.domain)
        if not domain:
            execution.steps.append(StepResult("infer_domain", StepOutcome.SKIPPED, "no confident domain"))
            return record

        updated = await self.repository.update_record(record["id"], {"domain": domain})
        execution.steps.append(StepResult("infer_domain", StepOutcome.SUCCEEDED, output={"domain": domain}))
        return updated

    async def _firm_niche(self, record: dict[str, Any], execution: JobExecution) -> dict[str, Any]:
        if record["firm_niche"]:
            execution.steps.append(StepResult("firm_niche", StepOutcome.SKIPPED, "firm niche already set"))
            return record

        niche = await self._chat(
            FirmNiche,
            FIRM_NICHE_SYSTEM_PROMPT,
            {
                "company_name": record["company_name"],
                "domain": record["domain"],
                "exec_search_category": record["exec_search_category"],
                "notes": record["perplexity_research_notes"],
            },
        )
        value = clean(niche.firm_niche)
        if not value:
            execution.steps.append(StepResult("firm_niche", StepOutcome.SKIPPED, "empty firm niche"))
            return record

        updated = await self.repository.update_record(record["id"], {"firm_niche": value})
        execution.steps.append(StepResult("firm_niche", StepOutcome.SUCCEEDED, output={"firm_niche": value}))
        return updated

    async def _draft_email_template(self, record: dict[str, Any], execution: JobExecution) -> dict[str, Any]:
        cache_key = build_cache_key(
            EMAIL_TEMPLATE_CACHE_FEATURE,
            EMAIL_TEMPLATE_CACHE_VERSION,
            record["id"],
            record["updated_at"],
        )
        cached = await self.cache.get(cache_key)
        cache_hit = cached is not None
        if cache_hit:
            try:
                draft = EmailTemplate.model_validate(cached)
            except ValidationError:
                draft, cache_hit = None, False
        if not cache_hit:
            draft = await self._chat(
                EmailTemplate,
                EMAIL_TEMPLATE_SYSTEM_PROMPT,
                {
                    "company_name": record["company_name"],
                    "domain": record["domain"],
                    "executive_name": record["executive_name"],
                    "executive_role": record["executive_role"],
                    "firm_niche": record["firm_niche"],
                    "notes": record["perplexity_research_notes"],
                },
                temperature=0.4,
            )
            await self.cache.set(cache_key, draft.model_dump())

        template = clean(draft.email_template)
        if not template:
            execution.steps.append(StepResult("draft_email_template", StepOutcome.SKIPPED, "empty template"))
            return record

        updated = await self.repository.update_record(record["id"], {"email_template": template})
        execution.steps.append(
            StepResult("draft_email_template", StepOutcome.SUCCEEDED, output={"cached": cache_hit})
        )
        return updated

    async def _research_notes(self, record: dict[str, Any], execution: JobExecution) -> dict[str, Any]:
        query = "\n".join(
            [
                f"Company: {record['company_name']}",
                f"Domain: {record['domain']}",
                f"Executive: {record['executive_name']} ({record['executive_role']})",
                "Need: summarize what this firm does, niche, and any relevant recent executive "
                "search/hiring signals.",
            ]
        )
        try:
            text = clean(await self.ai_client.research(query))
        except UpstreamError as exc:
            if not exc.is_unauthorized:
                raise
            logger.warning(
                "research step skipped record_id=%s provider=%s status=%s message=%s",
                record["id"],
                exc.provider,
                exc.status_code,
                exc.message,
            )
            execution.steps.append(StepResult("research_notes", StepOutcome.SKIPPED, "unauthorized"))
            return record

        if not text:
            execution.steps.append(StepResult("research_notes", StepOutcome.SKIPPED, "empty research"))
            return record

        notes = RESEARCH_NOTES_SEPARATOR.join(
            part for part in (record["perplexity_research_notes"], text) if part
        )
        updated = await self.repository.update_record(record["id"], {"perplexity_research_notes": notes})
        execution.steps.append(StepResult("research_notes", StepOutcome.SUCCEEDED))
        return updated

    async def _chat(
        self,
        model: type[BaseModel],
        system_prompt: str,
        context: dict[str, Any],
        *,
        temperature: float = 0.0,
    ) -> Any:
        payload = await self.ai_client.chat_json(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": json.dumps(context, indent=2, default=str)},
            ],
            temperature=temperature,
        )
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise UpstreamError("openai", None, f"unexpected completion shape for {model.__name__}") from exc


def _firm_lines(record: dict[str, Any]) -> list[str]:
    return [f"Company: {record['company_name']}", f"Domain: {record['domain']}"]


@lru_cache
def get_record_job_executor() -> RecordJobExecutor:
    repository = get_repository()
    return RecordJobExecutor(repository=repository, ai_client=get_ai_client(), cache=AICache(repository))
