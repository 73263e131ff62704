from __future__ import annotations

from datetime import datetime
from typing import Any

from firmbook.core.hashing import stable_hash


def build_cache_key(
    feature: str,
    version: str,
    entity_id: str,
    last_modified: datetime | str | None,
    *,
    namespace: str = "ai",
) -> str:
    """Key for an AI result derived from one entity.

    The entity's last-modified marker is part of the key, so any edit to the
    entity produces a miss and there is no expiry to manage.
    """
    marker = last_modified.isoformat() if isinstance(last_modified, datetime) else (last_modified or "")
    return f"{namespace}:{feature}:{version}:{entity_id}:{marker}"


def signature_cache_key(feature: str, version: str, signature: Any, *, namespace: str = "ai") -> str:
    """Key for an AI result whose inputs are not tied to one entity."""
    return f"{namespace}:{feature}:{version}:sig:{stable_hash(signature)}"


class AICache:
    """Content-addressed JSON cache in front of external AI calls."""

    def __init__(self, store: Any) -> None:
        self.store = store

    async def get(self, key: str) -> Any | None:
        return await self.store.ai_cache_get(key)

    async def set(self, key: str, value: Any) -> None:
        await self.store.ai_cache_set(key, value)
