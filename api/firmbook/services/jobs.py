from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from firmbook.core.config import get_settings
from firmbook.core.states import JobStatus
from firmbook.services.ai import UpstreamError
from firmbook.services.enrichment import get_record_job_executor
from firmbook.services.repository import RepositoryError, RepositoryNotFoundError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RateLimiter:
    """Spaces successive dispatches at least ``min_delay_seconds`` apart.

    The cursor is per instance, so the spacing only holds inside one process.
    """

    def __init__(
        self,
        min_delay_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.min_delay_seconds = max(0.0, min_delay_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_dispatch_at: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        async with self._lock:
            waited = 0.0
            if self._last_dispatch_at is not None:
                waited = max(0.0, self._last_dispatch_at + self.min_delay_seconds - self._clock())
                if waited > 0:
                    await self._sleep(waited)
            self._last_dispatch_at = self._clock()
            return waited


@dataclass(slots=True)
class JobOutcome:
    job_id: str
    record_id: str
    job_type: str
    status: JobStatus
    error: str | None = None
    run_after: datetime | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "record_id": self.record_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "error": self.error,
            "run_after": self.run_after,
            "steps": self.steps,
        }


class JobRunner:
    def __init__(
        self,
        repository: Any,
        executor: Any,
        rate_limiter: RateLimiter,
        *,
        rate_limit_backoff_seconds: int,
        auth_backoff_seconds: int,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds
        self.auth_backoff_seconds = auth_backoff_seconds

    async def run_batch(self, max_jobs: int) -> list[JobOutcome]:
        outcomes: list[JobOutcome] = []
        for _ in range(max(0, max_jobs)):
            job = await self.repository.claim_next_job()
            if job is None:
                break
            await self.rate_limiter.wait()
            outcomes.append(await self.run_job(job))
        return outcomes

    async def run_job(self, job: dict[str, Any]) -> JobOutcome:
        with tracer.start_as_current_span("jobs.run_job") as span:
            span.set_attribute("job.id", job["id"])
            span.set_attribute("job.type", job["job_type"])
            span.set_attribute("job.attempts", job.get("attempts", 0))

            try:
                execution = await self.executor.execute(job)
            except UpstreamError as exc:
                return await self._record_upstream_failure(job, exc)
            except Exception as exc:
                logger.exception("job failed id=%s type=%s", job["id"], job["job_type"])
                return await self._finish(job, JobStatus.FAILED, last_error=str(exc) or exc.__class__.__name__)

            span.set_attribute("job.skipped_steps", ",".join(execution.skipped_steps))
            return await self._finish(job, JobStatus.SUCCEEDED, steps=execution.summary())

    async def _record_upstream_failure(self, job: dict[str, Any], exc: UpstreamError) -> JobOutcome:
        message = str(exc)
        if exc.is_rate_limited:
            logger.info("job rate limited id=%s provider=%s", job["id"], exc.provider)
            return await self._finish(
                job,
                JobStatus.RATE_LIMITED,
                last_error=message,
                backoff_seconds=self.rate_limit_backoff_seconds,
            )
        if exc.is_unauthorized:
            logger.warning(
                "job auth failure id=%s provider=%s status=%s message=%s; backing off %ss",
                job["id"],
                exc.provider,
                exc.status_code,
                exc.message,
                self.auth_backoff_seconds,
            )
            return await self._finish(
                job,
                JobStatus.RATE_LIMITED,
                last_error=message,
                backoff_seconds=self.auth_backoff_seconds,
            )
        logger.info("job failed id=%s provider=%s status=%s", job["id"], exc.provider, exc.status_code)
        return await self._finish(job, JobStatus.FAILED, last_error=message)

    async def _finish(
        self,
        job: dict[str, Any],
        status: JobStatus,
        *,
        last_error: str | None = None,
        backoff_seconds: int | None = None,
        steps: list[dict[str, Any]] | None = None,
    ) -> JobOutcome:
        try:
            stored = await self.repository.complete_job(
                job["id"],
                status=status,
                last_error=last_error,
                backoff_seconds=backoff_seconds,
            )
        except RepositoryNotFoundError:
            # The record was deleted mid-run and its job row went with it.
            logger.info("job vanished before completion id=%s", job["id"])
            stored = None
        except RepositoryError as exc:
            logger.exception("job outcome not stored id=%s status=%s", job["id"], status.value)
            return JobOutcome(
                job_id=job["id"],
                record_id=job["record_id"],
                job_type=job["job_type"],
                status=JobStatus.FAILED,
                error=f"outcome not stored: {exc}",
                steps=steps or [],
            )
        if stored is None:
            # Cancelled or deleted while executing; neither is undone here.
            status = JobStatus.CANCELLED
        return JobOutcome(
            job_id=job["id"],
            record_id=job["record_id"],
            job_type=job["job_type"],
            status=status,
            error=last_error if status == JobStatus.FAILED else None,
            run_after=stored.get("run_after") if stored and status == JobStatus.RATE_LIMITED else None,
            steps=steps or [],
        )


@lru_cache
def get_job_runner() -> JobRunner:
    settings = get_settings()
    repository = get_repository()
    return JobRunner(
        repository=repository,
        executor=get_record_job_executor(),
        rate_limiter=RateLimiter(settings.jobs_min_delay_ms / 1000.0),
        rate_limit_backoff_seconds=settings.jobs_rate_limit_backoff_seconds,
        auth_backoff_seconds=settings.jobs_auth_backoff_seconds,
    )
