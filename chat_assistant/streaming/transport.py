"""Cancellable HTTP transport for chat completion requests."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised for connection failures and non-success provider responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class TransportResponse:
    """Open response: its content type and an ordered line iterator."""

    content_type: str
    lines: AsyncIterator[str]

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type.lower()


class CompletionTransport(Protocol):
    """Protocol for chat completion transports."""

    def open(self, payload: dict[str, Any]) -> AbstractAsyncContextManager[TransportResponse]:
        """Dispatch ``payload`` and yield the open response."""


@dataclass(slots=True)
class HttpxCompletionTransport:
    """OpenAI-compatible ``/chat/completions`` transport built on httpx.

    ``timeout_seconds=None`` waits indefinitely for the provider.
    """

    base_url: str
    api_key: str | None = None
    timeout_seconds: float | None = None
    client: httpx.AsyncClient | None = None

    @asynccontextmanager
    async def open(self, payload: dict[str, Any]) -> AsyncIterator[TransportResponse]:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        owns_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            async with client.stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Chat completion HTTP {response.status_code}: {detail}",
                        status_code=response.status_code,
                    )
                yield TransportResponse(
                    content_type=response.headers.get("content-type", ""),
                    lines=response.aiter_lines(),
                )
        except httpx.HTTPError as exc:
            raise TransportError(f"Chat completion request failed: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()
