"""Attachment descriptions and text extraction for outbound prompts."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import httpx

from chat_assistant.schemas.message import Attachment

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_TEXT_CHARS = 5000
TRUNCATION_MARKER = "...[truncated]"
_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


class AttachmentTextLoader(Protocol):
    """Protocol for fetching the text body of an attachment."""

    async def load_text(self, attachment: Attachment) -> str | None:
        """Return extracted text, or None when the file has none."""


def supports_text_extraction(mime_type: str) -> bool:
    return "text/" in mime_type or "json" in mime_type


def truncate_attachment_text(text: str, *, limit: int = MAX_ATTACHMENT_TEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


@dataclass(slots=True)
class HttpAttachmentTextLoader:
    """Fetches plain-text and JSON attachments from their storage URL."""

    timeout_seconds: float = 15
    client: httpx.AsyncClient | None = None

    async def load_text(self, attachment: Attachment) -> str | None:
        if not supports_text_extraction(attachment.type):
            return None
        owns_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            response = await client.get(attachment.url)
            response.raise_for_status()
            return truncate_attachment_text(response.text)
        except httpx.HTTPError:
            logger.warning(
                "attachments.text_fetch_failed name=%s url=%s",
                attachment.original_name,
                attachment.url,
                exc_info=True,
            )
            return None
        finally:
            if owns_client:
                await client.aclose()


async def load_attachment_texts(
    attachments: Sequence[Attachment],
    loader: AttachmentTextLoader | None,
) -> dict[str, str]:
    """Return extracted text keyed by attachment name, skipping failures."""

    if loader is None:
        return {}
    contents: dict[str, str] = {}
    for attachment in attachments:
        try:
            text = await loader.load_text(attachment)
        except Exception:
            logger.warning("attachments.loader_failed name=%s", attachment.original_name, exc_info=True)
            continue
        if text:
            contents[attachment.original_name] = text
    return contents


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size / (1024**exponent), 2)
    return f"{value:g} {_SIZE_UNITS[exponent]}"


def build_attachment_context(
    attachments: Sequence[Attachment],
    text_contents: dict[str, str] | None = None,
) -> str:
    """Render the deterministic file block appended to the outbound user turn."""

    if not attachments:
        return ""
    images = [item for item in attachments if item.is_image]
    documents = [item for item in attachments if not item.is_image]

    context = "\n\n=== ATTACHED FILES ===\n"
    if images:
        context += f"\nIMAGES ({len(images)}):\n"
        for index, image in enumerate(images, start=1):
            context += f"{index}. {image.original_name} ({image.type})\n   URL: {image.url}\n"
    if documents:
        context += f"\nDOCUMENTS ({len(documents)}):\n"
        for index, document in enumerate(documents, start=1):
            context += (
                f"{index}. {document.original_name} ({document.type}) - "
                f"{format_file_size(document.size)}\n   URL: {document.url}\n"
            )
    context += "\n=== END FILES ===\n"

    blocks = [
        f"\n--- Content of {name} ---\n{text}\n--- End of {name} ---"
        for name, text in (text_contents or {}).items()
    ]
    if blocks:
        context += "\n\nFILE CONTENTS:\n" + "\n".join(blocks)
    return context


def describe_attachments_for_memory(attachments: Sequence[Attachment]) -> str:
    if not attachments:
        return ""
    names = ", ".join(item.original_name for item in attachments)
    return f" [Shared {len(attachments)} files: {names}]"
