from __future__ import annotations

from typing import Any

import httpx


class JobClient:
    """HTTP client for the firmbook job endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def run_batch(self, max_jobs: int = 5) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/jobs/run", params={"max": max_jobs})
            response.raise_for_status()
            return response.json()

    async def cancel_jobs(self, statuses: list[str] | None = None) -> int:
        payload = {"statuses": statuses} if statuses else {}
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/jobs/cancel", json=payload)
            response.raise_for_status()
            return int(response.json().get("cancelled", 0))
