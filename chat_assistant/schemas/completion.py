"""Schemas for the completion proxy endpoint."""

from typing import Literal

from pydantic import BaseModel, Field

from chat_assistant.context_window import DEFAULT_MODEL
from chat_assistant.schemas.message import Attachment


class OutboundMessage(BaseModel):
    """Role/content pair sent to the model provider."""

    role: Literal["system", "user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    """Proxy request mirroring the client's outbound call."""

    messages: list[OutboundMessage] = Field(min_length=1)
    model: str = DEFAULT_MODEL
    stream: bool = False
    attachments: list[Attachment] = Field(default_factory=list)
    user_id: str | None = None
    chat_id: str | None = None


class ModelInfo(BaseModel):
    """Model configuration row."""

    model_id: str
    name: str
    max_tokens: int
    max_output_tokens: int
    reserve_tokens: int
    budget: int
