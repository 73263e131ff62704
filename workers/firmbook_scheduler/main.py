from __future__ import annotations

import asyncio
from collections import Counter
import logging
import random
from typing import Any

from opentelemetry import trace

from firmbook_scheduler.core.config import Settings, get_settings
from firmbook_scheduler.core.telemetry import (
    configure_scheduler_logging,
    setup_scheduler_telemetry,
    shutdown_scheduler_telemetry,
)
from firmbook_scheduler.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def summarize_batch(payload: dict[str, Any]) -> Counter[str]:
    return Counter(str(job.get("status", "unknown")) for job in payload.get("processed") or [])


def next_backoff(current: float, *, max_backoff_seconds: float, jitter: float) -> float:
    return min(current * (2.0 + jitter), max_backoff_seconds)


async def run_cycle(client: JobClient, settings: Settings) -> int:
    """Drive one batch through the queue and return how many jobs it processed."""
    with tracer.start_as_current_span("scheduler.run_batch") as span:
        payload = await client.run_batch(max_jobs=settings.batch_size)
        counts = summarize_batch(payload)
        processed = sum(counts.values())
        span.set_attribute("jobs.processed", processed)
        if processed:
            logger.info(
                "batch processed=%s statuses=%s min_delay_ms=%s",
                processed,
                dict(sorted(counts.items())),
                payload.get("min_delay_ms"),
            )
        return processed


async def run_scheduler() -> None:
    settings = get_settings()
    configure_scheduler_logging(settings)
    telemetry_runtime = setup_scheduler_telemetry(settings)
    client = JobClient(settings.api_base_url, timeout_seconds=settings.request_timeout_seconds)

    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                processed = await run_cycle(client, settings)
                backoff = settings.poll_interval_seconds
                if not processed:
                    await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = next_backoff(
                    backoff,
                    max_backoff_seconds=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("scheduler iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_scheduler_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_scheduler())
