"""Message and attachment schemas shared by the controller and the API."""

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_message_id() -> str:
    """Return an opaque message identifier."""

    return f"msg-{uuid4().hex}"


class Attachment(BaseModel):
    """Reference to an uploaded file."""

    original_name: str = Field(min_length=1)
    size: int = Field(ge=0)
    type: str
    url: str
    public_id: str
    uploadcare_uuid: str | None = None

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


class ChatMessage(BaseModel):
    """One conversational turn.

    ``metadata`` carries derived flags: ``isStreaming``, ``isEdited``,
    ``originalContent`` and ``model``.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_message_id)
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_streaming(self) -> bool:
        return bool(self.metadata.get("isStreaming"))

    def to_outbound(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class MessageEditRequest(BaseModel):
    """Edit payload for a user message."""

    content: str = Field(min_length=1)
