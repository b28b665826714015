"""System instruction and outbound payload assembly."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from chat_assistant.schemas.message import Attachment
from chat_assistant.services.memory import format_memory_context

BASE_SYSTEM_PROMPT = "You are a helpful AI assistant. Be concise, accurate, and friendly."
COMPLETION_TEMPERATURE = 0.7
COMPLETION_MAX_TOKENS = 2048
TITLE_MAX_CHARS = 50
DEFAULT_CHAT_TITLE = "New Chat"
FILE_CHAT_TITLE = "File conversation"

_IMAGES_NOTE = (
    "\n- Images: I can see the URLs and filenames. While I cannot directly view the images "
    "with this model, I can help based on the context and filenames provided."
)
_DOCUMENTS_NOTE = (
    "\n- Documents: I can see filenames, types, and have extracted text content where possible. "
    "Reference this information in your response."
)


def build_system_instruction(
    memories: Sequence[str] = (),
    attachments: Sequence[Attachment] = (),
    *,
    base_prompt: str = BASE_SYSTEM_PROMPT,
) -> str:
    """Base prompt, then retrieved memories, then the shared-files acknowledgment."""

    instruction = base_prompt + format_memory_context(list(memories))
    if attachments:
        instruction += "\n\nThe user has shared files with you:"
        if any(item.is_image for item in attachments):
            instruction += _IMAGES_NOTE
        if any(not item.is_image for item in attachments):
            instruction += _DOCUMENTS_NOTE
        instruction += (
            "\n\nPlease acknowledge the files and provide relevant assistance "
            "based on the file information provided."
        )
    return instruction


def build_completion_payload(
    messages: Sequence[Mapping[str, Any]],
    *,
    model: str,
    system: str | None,
    stream: bool = True,
) -> dict[str, Any]:
    """Return an OpenAI-compatible chat completions body."""

    outbound: list[dict[str, str]] = []
    if system:
        outbound.append({"role": "system", "content": system})
    outbound.extend(
        {"role": str(message["role"]), "content": str(message.get("content") or "")}
        for message in messages
        if message.get("role") != "system"
    )
    return {
        "model": model,
        "messages": outbound,
        "temperature": COMPLETION_TEMPERATURE,
        "max_tokens": COMPLETION_MAX_TOKENS,
        "stream": stream,
    }


def derive_chat_title(text: str, *, has_attachments: bool = False) -> str:
    cleaned = " ".join(text.split())
    if not cleaned:
        return FILE_CHAT_TITLE if has_attachments else DEFAULT_CHAT_TITLE
    if len(cleaned) <= TITLE_MAX_CHARS:
        return cleaned
    return cleaned[:TITLE_MAX_CHARS] + "..."
