"""Schemas for conversation turns."""

from typing import Literal

from pydantic import BaseModel, Field

from chat_assistant.context_window import DEFAULT_MODEL, TrimStrategy
from chat_assistant.schemas.message import Attachment, ChatMessage


class TurnRequest(BaseModel):
    """Request payload for one user turn."""

    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    model: str = DEFAULT_MODEL
    strategy: TrimStrategy = TrimStrategy.SMART_TRIM
    preserve_last_n: int = Field(default=6, ge=0)
    user_id: str | None = None


class ContextInfo(BaseModel):
    """Budgeting statistics for the last outbound request."""

    total_messages: int
    sent_messages: int
    removed_messages: int
    total_tokens: int
    budget: int


class TurnResult(BaseModel):
    """Outcome of one send or edit-and-regenerate turn."""

    chat_id: str
    outcome: Literal["completed", "cancelled", "failed"]
    user_message: ChatMessage
    assistant_message: ChatMessage | None = None
    context: ContextInfo | None = None
    error: str | None = None


class ContextStatus(BaseModel):
    """Context window status for a stored conversation."""

    chat_id: str
    model: str
    model_name: str
    max_tokens: int
    budget: int
    total_tokens: int
    needs_trimming: bool


class StopResult(BaseModel):
    """Whether a stop request interrupted an active turn."""

    chat_id: str
    stopped: bool
