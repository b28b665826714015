"""Chat request/response schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from chat_assistant.schemas.message import ChatMessage


class ChatCreate(BaseModel):
    """Create payload for an empty chat."""

    title: str = Field(default="New Chat", min_length=1, max_length=255)
    user_id: str | None = None


class ChatUpdate(BaseModel):
    """Partial update for chat header fields."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    is_pinned: bool | None = None
    is_archived: bool | None = None


class ChatRead(BaseModel):
    """Serialized chat header."""

    id: str
    title: str
    user_id: str | None
    is_pinned: bool
    is_archived: bool
    created_at: datetime
    updated_at: datetime


class ChatDetail(ChatRead):
    """Chat header with its durable messages."""

    messages: list[ChatMessage] = Field(default_factory=list)
