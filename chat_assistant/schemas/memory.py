"""Schemas for the long-term memory endpoints."""

from typing import Literal

from pydantic import BaseModel, Field


class MemoryItemRead(BaseModel):
    """One remembered snippet."""

    id: str
    memory: str
    score: float | None = None
    user_id: str | None = None
    metadata: dict[str, object] = Field(default_factory=dict)


class MemorySearchRequest(BaseModel):
    """Memory search payload."""

    user_id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=100)


class MemoryStoreMessage(BaseModel):
    """Message offered to the memory service."""

    role: Literal["user", "assistant"]
    content: str


class MemoryStoreRequest(BaseModel):
    """Memory store payload."""

    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    messages: list[MemoryStoreMessage] = Field(min_length=1)


class MemoryStoreResultRead(BaseModel):
    """Per-message memory store outcome."""

    status: Literal["ok", "skipped"]
    memory_id: str | None = None
    reason: str | None = None
