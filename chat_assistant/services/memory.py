"""Long-term memory collaborators.

Both operations are best-effort from the conversation's point of view: the
controller and the completion proxy catch and log every failure raised here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol
from uuid import uuid4

import httpx

from chat_assistant.config import get_settings
from chat_assistant.extraction.extractor_interface import MemoryExtractorInterface
from chat_assistant.extraction.rule_based_extractor import RuleBasedMemoryExtractor
from chat_assistant.services.memory_index import HashEmbeddingIndex

logger = logging.getLogger(__name__)

MEMORY_CONTEXT_HEADER = "Relevant context from previous conversations:"


class MemoryServiceError(RuntimeError):
    """Raised when the memory backend cannot be reached or answers badly."""


@dataclass(slots=True)
class MemoryItem:
    """Remembered snippet returned by search or listing."""

    id: str
    memory: str
    score: float | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MemoryStoreResult:
    """Outcome of offering one message to the memory service."""

    status: Literal["ok", "skipped"]
    memory_id: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, memory_id: str | None) -> MemoryStoreResult:
        return cls(status="ok", memory_id=memory_id)

    @classmethod
    def skipped(cls, reason: str) -> MemoryStoreResult:
        return cls(status="skipped", reason=reason)


class MemoryService(Protocol):
    """Protocol for long-term memory backends."""

    async def search(self, query: str, user_id: str, limit: int = 10) -> list[MemoryItem]:
        """Return snippets ranked by relevance to ``query``."""

    async def process_and_store(
        self,
        content: str,
        role: str,
        user_id: str,
        session_id: str,
    ) -> MemoryStoreResult:
        """Decide whether ``content`` is worth keeping and store it if so."""

    async def list_user_memories(self, user_id: str) -> list[MemoryItem]:
        """Return every memory held for ``user_id``."""

    async def delete(self, memory_id: str) -> bool:
        """Remove one memory; False when it did not exist."""


@dataclass(slots=True)
class Mem0MemoryService:
    """Mem0 platform client over its REST API."""

    api_key: str
    base_url: str = "https://api.mem0.ai"
    timeout_seconds: float = 30
    extractor: MemoryExtractorInterface = field(default_factory=RuleBasedMemoryExtractor)
    client: httpx.AsyncClient | None = None

    async def search(self, query: str, user_id: str, limit: int = 10) -> list[MemoryItem]:
        decoded = await self._request(
            "POST",
            "/v1/memories/search/",
            json={"query": query, "user_id": user_id, "limit": limit},
        )
        return [_memory_item_from_row(row) for row in _rows(decoded)][:limit]

    async def process_and_store(
        self,
        content: str,
        role: str,
        user_id: str,
        session_id: str,
    ) -> MemoryStoreResult:
        extracted = self.extractor.extract(content, role)
        if extracted is None:
            return MemoryStoreResult.skipped("nothing worth remembering")
        decoded = await self._request(
            "POST",
            "/v1/memories/",
            json={
                "messages": [{"role": "user", "content": extracted.text}],
                "user_id": user_id,
                "metadata": {
                    "sessionId": session_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    **extracted.metadata,
                },
            },
        )
        rows = _rows(decoded)
        memory_id = str(rows[0].get("id")) if rows and rows[0].get("id") else None
        return MemoryStoreResult.ok(memory_id)

    async def list_user_memories(self, user_id: str) -> list[MemoryItem]:
        decoded = await self._request("GET", "/v1/memories/", params={"user_id": user_id})
        return [_memory_item_from_row(row) for row in _rows(decoded)]

    async def delete(self, memory_id: str) -> bool:
        try:
            await self._request("DELETE", f"/v1/memories/{memory_id}/")
        except MemoryServiceError:
            logger.warning("memory.delete_failed memory_id=%s", memory_id)
            return False
        return True

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Token {self.api_key}"}
        owns_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else None
        except httpx.HTTPStatusError as exc:
            raise MemoryServiceError(
                f"Mem0 HTTP {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise MemoryServiceError(f"Mem0 request failed: {exc}") from exc
        except ValueError as exc:
            raise MemoryServiceError("Mem0 returned an invalid response") from exc
        finally:
            if owns_client:
                await client.aclose()


class LocalMemoryService:
    """In-process memory store ranked by hash-embedding similarity."""

    def __init__(self, extractor: MemoryExtractorInterface | None = None) -> None:
        self.extractor = extractor or RuleBasedMemoryExtractor()
        self._items: dict[str, MemoryItem] = {}
        self._index = HashEmbeddingIndex()

    async def search(self, query: str, user_id: str, limit: int = 10) -> list[MemoryItem]:
        owned = [item for item in self._items.values() if item.user_id == user_id]
        scores = self._index.score(query, (item.id for item in owned))
        ranked = [
            MemoryItem(
                id=item.id,
                memory=item.memory,
                score=scores.get(item.id, 0.0),
                user_id=item.user_id,
                metadata=dict(item.metadata),
            )
            for item in owned
        ]
        ranked.sort(key=lambda row: (-(row.score or 0.0), row.id))
        return ranked[:limit]

    async def process_and_store(
        self,
        content: str,
        role: str,
        user_id: str,
        session_id: str,
    ) -> MemoryStoreResult:
        extracted = self.extractor.extract(content, role)
        if extracted is None:
            return MemoryStoreResult.skipped("nothing worth remembering")
        if any(item.user_id == user_id and item.memory == extracted.text for item in self._items.values()):
            return MemoryStoreResult.skipped("duplicate memory")
        memory_id = f"mem-{uuid4().hex}"
        self._items[memory_id] = MemoryItem(
            id=memory_id,
            memory=extracted.text,
            user_id=user_id,
            metadata={"sessionId": session_id, **extracted.metadata},
        )
        self._index.add(memory_id, extracted.text)
        return MemoryStoreResult.ok(memory_id)

    async def list_user_memories(self, user_id: str) -> list[MemoryItem]:
        return [item for item in self._items.values() if item.user_id == user_id]

    async def delete(self, memory_id: str) -> bool:
        self._index.discard(memory_id)
        return self._items.pop(memory_id, None) is not None


def get_default_memory_service() -> MemoryService:
    """Return the Mem0 client when configured, else the local store."""

    settings = get_settings()
    if settings.mem0_api_key:
        return Mem0MemoryService(
            api_key=settings.mem0_api_key,
            base_url=settings.mem0_base_url,
            timeout_seconds=settings.memory_timeout_seconds,
        )
    return LocalMemoryService()


async def retrieve_memory_snippets(
    memory: MemoryService | None,
    query: str,
    user_id: str,
    *,
    limit: int,
) -> list[str]:
    """Best-effort search; failures are logged and yield no context."""

    if memory is None or not query.strip():
        return []
    try:
        items = await memory.search(query, user_id, limit)
    except Exception:
        logger.warning("memory.search_failed user_id=%s", user_id, exc_info=True)
        return []
    return [item.memory for item in items if item.memory]


def format_memory_context(memories: list[str]) -> str:
    if not memories:
        return ""
    lines = "\n".join(f"- {memory}" for memory in memories)
    return f"\n\n{MEMORY_CONTEXT_HEADER}\n{lines}"


def _rows(decoded: Any) -> list[dict[str, Any]]:
    if isinstance(decoded, list):
        return [row for row in decoded if isinstance(row, dict)]
    if isinstance(decoded, dict):
        for key in ("results", "memories"):
            value = decoded.get(key)
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
    return []


def _memory_item_from_row(row: dict[str, Any]) -> MemoryItem:
    score = row.get("score")
    return MemoryItem(
        id=str(row.get("id") or ""),
        memory=str(row.get("memory") or ""),
        score=float(score) if isinstance(score, (int, float)) else None,
        user_id=row.get("user_id"),
        metadata=row.get("metadata") or {},
    )
