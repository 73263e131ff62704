from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

import httpx

from firmbook.core.config import get_settings

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = {401, 403}
RATE_LIMIT_STATUS_CODE = 429
RESEARCH_SYSTEM_PROMPT = (
    "You are a research assistant. Provide concise, factual answers. "
    "Include the company website/domain if confidently found."
)


class UpstreamError(Exception):
    """Failure of an external AI provider call, tagged with the HTTP status when known."""

    def __init__(self, provider: str, status_code: int | None, message: str) -> None:
        super().__init__(f"{provider} error: {message}")
        self.provider = provider
        self.status_code = status_code
        self.message = message

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == RATE_LIMIT_STATUS_CODE

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code in AUTH_STATUS_CODES


class AIClient:
    def __init__(
        self,
        *,
        openai_api_key: str | None,
        openai_model: str,
        openai_base_url: str,
        perplexity_api_key: str | None,
        perplexity_model: str,
        perplexity_base_url: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.openai_base_url = openai_base_url.rstrip("/")
        self.perplexity_api_key = perplexity_api_key
        self.perplexity_model = perplexity_model
        self.perplexity_base_url = perplexity_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def chat_json(self, messages: list[dict[str, str]], *, temperature: float = 0.0) -> dict[str, Any]:
        body = await self._post(
            provider="openai",
            url=f"{self.openai_base_url}/chat/completions",
            api_key=self.openai_api_key,
            payload={
                "model": self.openai_model,
                "temperature": temperature,
                "messages": messages,
                "response_format": {"type": "json_object"},
            },
        )
        content = _message_content(body)
        if not content:
            raise UpstreamError("openai", None, "empty completion content")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise UpstreamError("openai", None, f"non-JSON completion: {content[:200]}") from exc
        if not isinstance(parsed, dict):
            raise UpstreamError("openai", None, "completion is not a JSON object")
        return parsed

    async def research(self, query: str) -> str:
        body = await self._post(
            provider="perplexity",
            url=f"{self.perplexity_base_url}/chat/completions",
            api_key=self.perplexity_api_key,
            payload={
                "model": self.perplexity_model,
                "temperature": 0.2,
                "messages": [
                    {"role": "system", "content": RESEARCH_SYSTEM_PROMPT},
                    {"role": "user", "content": query},
                ],
            },
        )
        return _message_content(body)

    async def _post(
        self,
        *,
        provider: str,
        url: str,
        api_key: str | None,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        if not api_key:
            # Missing credentials are a configuration problem, reported like a 401.
            raise UpstreamError(provider, 401, "api key is not configured")

        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamError(provider, None, f"request timed out after {self.timeout_seconds:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(provider, None, str(exc) or exc.__class__.__name__) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200:
            message = _error_message(body) or response.reason_phrase or f"HTTP {response.status_code}"
            logger.info("upstream call failed provider=%s status=%s", provider, response.status_code)
            raise UpstreamError(provider, response.status_code, message)
        if not isinstance(body, dict):
            raise UpstreamError(provider, response.status_code, "non-JSON response body")
        return body


def _message_content(body: dict[str, Any]) -> str:
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    message = first.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""


def _error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    if isinstance(error, str) and error:
        return error
    return None


@lru_cache
def get_ai_client() -> AIClient:
    settings = get_settings()
    return AIClient(
        openai_api_key=settings.openai_api_key,
        openai_model=settings.openai_model,
        openai_base_url=settings.openai_base_url,
        perplexity_api_key=settings.perplexity_api_key,
        perplexity_model=settings.perplexity_model,
        perplexity_base_url=settings.perplexity_base_url,
        timeout_seconds=settings.upstream_timeout_seconds,
    )
