from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from firmbook.main import app
from firmbook.services.ai import UpstreamError, get_ai_client
from firmbook.services.ai_cache import AICache
from firmbook.services.enrichment import RecordJobExecutor, get_record_job_executor
from firmbook.services.repository import RepositoryNotFoundError, get_repository

NOW = datetime(2024, 7, 1, tzinfo=timezone.utc)
RECORD_ID = "33333333-3333-3333-3333-333333333333"


class FakeStore:
    def __init__(self) -> None:
        self.record = {
            "id": RECORD_ID,
            "company_name": "Acme",
            "domain": "acme.io",
            "exec_search_category": "",
            "exec_search_status": "unknown",
            "perplexity_research_notes": "",
            "firm_niche": "Fintech",
            "executive_name": "Jane Doe",
            "executive_role": "CEO",
            "executive_linkedin": "",
            "email": "jane@acme.io",
            "email_template": "",
            "source_file": "leads.csv",
            "raw_row_json": "",
            "import_batch_id": None,
            "company_id": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
        self.cache: dict[str, Any] = {}
        self.known_domains = {"known.io"}

    async def get_record(self, record_id: str) -> dict[str, Any]:
        if record_id != RECORD_ID:
            raise RepositoryNotFoundError("record not found")
        return dict(self.record)

    async def update_record(self, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        self.record.update(patch)
        return dict(self.record)

    async def ai_cache_get(self, key: str) -> Any | None:
        return self.cache.get(key)

    async def ai_cache_set(self, key: str, value: Any) -> None:
        self.cache[key] = value

    async def existing_domains(self, domains: list[str]) -> set[str]:
        return set(domains) & self.known_domains


class ScriptedAIClient:
    def __init__(self) -> None:
        self.research_reply: str | Exception = "Executive search\n- retained searches"

    async def chat_json(self, messages: list[dict[str, str]], *, temperature: float = 0.0) -> dict[str, Any]:
        system_prompt = messages[0]["content"]
        if "executive search" in system_prompt:
            return {"status": "yes", "reason": "open CFO search"}
        if "Extract structured firm suggestions" in system_prompt:
            return {"suggestions": [{"company_name": "New Co", "domain": "new.io"}, {"domain": "known.io"}]}
        return {"email_template": "Hi {Executive_Name}"}

    async def research(self, query: str) -> str:
        if isinstance(self.research_reply, Exception):
            raise self.research_reply
        return self.research_reply


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def ai_client() -> ScriptedAIClient:
    return ScriptedAIClient()


@pytest.fixture
def client(store: FakeStore, ai_client: ScriptedAIClient) -> TestClient:
    executor = RecordJobExecutor(repository=store, ai_client=ai_client, cache=AICache(store))
    app.dependency_overrides[get_record_job_executor] = lambda: executor
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_ai_client] = lambda: ai_client
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_verify_exec_search_updates_record(client: TestClient) -> None:
    response = client.post(f"/records/{RECORD_ID}/ai/verify-exec-search")

    assert response.status_code == 200
    payload = response.json()
    assert payload["step"] == "verify_exec_search"
    assert payload["reason"] == "open CFO search"
    assert payload["record"]["exec_search_status"] == "yes"


def test_draft_email_template_stores_template(client: TestClient, store: FakeStore) -> None:
    response = client.post(f"/records/{RECORD_ID}/ai/draft-email-template")

    assert response.status_code == 200
    assert response.json()["output"] == {"cached": False}
    assert store.record["email_template"] == "Hi {Executive_Name}"


def test_categorize_does_not_change_the_record(client: TestClient, store: FakeStore) -> None:
    response = client.post(f"/records/{RECORD_ID}/ai/categorize")

    assert response.status_code == 200
    assert response.json()["category"] == "Executive search"
    assert store.record["perplexity_research_notes"] == ""


def test_deep_notes_and_executives(client: TestClient) -> None:
    notes = client.post(f"/records/{RECORD_ID}/ai/deep-notes")
    executives = client.post(f"/records/{RECORD_ID}/ai/executives")

    assert notes.status_code == 200
    assert notes.json()["record"]["perplexity_research_notes"] == "Executive search\n- retained searches"
    assert executives.json() == {"executives": "Executive search\n- retained searches", "cached": False}


def test_unknown_record_is_404(client: TestClient) -> None:
    response = client.post("/records/44444444-4444-4444-4444-444444444444/ai/research")
    assert response.status_code == 404


def test_provider_failures_map_to_gateway_statuses(client: TestClient, ai_client: ScriptedAIClient) -> None:
    ai_client.research_reply = UpstreamError("perplexity", 429, "too many requests")
    assert client.post(f"/records/{RECORD_ID}/ai/categorize").status_code == 429

    ai_client.research_reply = UpstreamError("perplexity", 500, "boom")
    assert client.post(f"/records/{RECORD_ID}/ai/executives").status_code == 502


def test_research_suggest_filters_known_domains(client: TestClient) -> None:
    response = client.post("/research/suggest", json={"command": "boutique search firms"})

    assert response.status_code == 200
    payload = response.json()
    assert [suggestion["domain"] for suggestion in payload["suggestions"]] == ["new.io"]
    assert payload["telemetry"] == {"suggested": 2, "filtered_existing": 1}


def test_research_suggest_rejects_blank_command(client: TestClient) -> None:
    assert client.post("/research/suggest", json={"command": ""}).status_code == 422
    assert client.post("/research/suggest", json={"command": "   "}).status_code == 422
