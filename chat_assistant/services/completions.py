"""OpenAI-compatible completion proxy with memory and attachment enrichment."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

from chat_assistant.schemas.completion import CompletionRequest
from chat_assistant.schemas.message import Attachment
from chat_assistant.services.attachments import (
    AttachmentTextLoader,
    build_attachment_context,
    load_attachment_texts,
)
from chat_assistant.services.memory import MemoryService, retrieve_memory_snippets
from chat_assistant.services.prompting import build_completion_payload, build_system_instruction
from chat_assistant.streaming import CompletionTransport, TransportError, TransportResponse
from chat_assistant.streaming.sse import (
    DONE_FRAME,
    SSE_DONE,
    SseDelta,
    encode_delta_frame,
    extract_json_content,
    parse_sse_line,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "api-chat"


class CompletionProxyError(RuntimeError):
    """Raised when the provider call fails; carries the HTTP mapping."""

    def __init__(self, message: str, *, status_code: int = 502, error_type: str = "provider_error") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


@dataclass(slots=True)
class PreparedCompletion:
    """Provider payload plus what the memory job needs afterwards."""

    payload: dict[str, Any]
    model: str
    user_id: str
    session_id: str | None
    user_content: str
    attachments: list[Attachment] = field(default_factory=list)


async def prepare_completion(
    request: CompletionRequest,
    *,
    memory: MemoryService | None,
    attachment_loader: AttachmentTextLoader | None,
    default_user_id: str,
    memory_search_limit: int = 5,
) -> PreparedCompletion:
    """Enrich the last message with attachment context and build the system instruction."""

    messages = [message.model_dump() for message in request.messages]
    user_id = request.user_id or default_user_id
    last = messages[-1]
    user_content = last["content"]

    if request.attachments:
        text_contents = await load_attachment_texts(request.attachments, attachment_loader)
        messages[-1] = {
            **last,
            "content": user_content + build_attachment_context(request.attachments, text_contents),
        }

    memories = await retrieve_memory_snippets(memory, user_content, user_id, limit=memory_search_limit)
    system = build_system_instruction(memories, request.attachments)
    payload = build_completion_payload(messages, model=request.model, system=system, stream=request.stream)
    logger.info(
        "completions.prepared user_id=%s model=%s stream=%s messages=%d attachments=%d memories=%d",
        user_id,
        request.model,
        request.stream,
        len(messages),
        len(request.attachments),
        len(memories),
    )
    return PreparedCompletion(
        payload=payload,
        model=request.model,
        user_id=user_id,
        session_id=request.chat_id,
        user_content=user_content,
        attachments=list(request.attachments),
    )


async def open_completion_stream(
    transport: CompletionTransport,
    prepared: PreparedCompletion,
) -> AsyncIterator[str] | None:
    """Start a streamed completion and return its SSE frames.

    Returns None when the provider fails before the first frame so the caller
    can fall back to a non-streamed completion.
    """

    stack = AsyncExitStack()
    try:
        response = await stack.enter_async_context(transport.open({**prepared.payload, "stream": True}))
        deltas = _iter_deltas(response)
        first = await anext(deltas, None)
    except (TransportError, ValueError) as exc:
        await stack.aclose()
        logger.warning("completions.stream_fallback model=%s reason=%s", prepared.model, exc)
        return None
    except BaseException:
        await stack.aclose()
        raise

    async def frames() -> AsyncIterator[str]:
        started = perf_counter()
        count = 0
        try:
            if first is not None:
                count += 1
                yield encode_delta_frame(first)
            async for delta in deltas:
                count += 1
                yield encode_delta_frame(delta)
            yield DONE_FRAME
            logger.info(
                "completions.stream_timing model=%s frames=%d total_ms=%.2f",
                prepared.model,
                count,
                (perf_counter() - started) * 1000.0,
            )
        except (TransportError, ValueError):
            logger.exception("completions.stream_failed model=%s frames=%d", prepared.model, count)
        finally:
            await stack.aclose()

    return frames()


async def complete_once(transport: CompletionTransport, prepared: PreparedCompletion) -> dict[str, Any]:
    """Run a non-streamed completion and return an OpenAI-compatible body."""

    started = perf_counter()
    usage: dict[str, Any] = {}
    try:
        async with transport.open({**prepared.payload, "stream": False}) as response:
            if response.is_json:
                body = "\n".join([line async for line in response.lines])
                text = extract_json_content(body)
                usage = _usage_from_body(body)
            else:
                text = "".join([delta async for delta in _iter_deltas(response)])
    except TransportError as exc:
        raise _proxy_error(exc) from exc
    except ValueError as exc:
        raise CompletionProxyError(f"Provider returned an unexpected completion: {exc}") from exc

    logger.info(
        "completions.complete_timing model=%s chars=%d total_ms=%.2f",
        prepared.model,
        len(text),
        (perf_counter() - started) * 1000.0,
    )
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    now = time.time()
    return {
        "id": f"chatcmpl-{int(now * 1000)}",
        "object": "chat.completion",
        "created": int(now),
        "model": prepared.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


async def _iter_deltas(response: TransportResponse) -> AsyncIterator[str]:
    if response.is_json:
        body = "\n".join([line async for line in response.lines])
        yield extract_json_content(body)
        return
    async for line in response.lines:
        event = parse_sse_line(line)
        if event is SSE_DONE:
            return
        if isinstance(event, SseDelta):
            yield event.text


def _usage_from_body(body: str) -> dict[str, Any]:
    try:
        usage = json.loads(body).get("usage")
    except (json.JSONDecodeError, AttributeError):
        return {}
    return usage if isinstance(usage, dict) else {}


def _proxy_error(exc: TransportError) -> CompletionProxyError:
    message = str(exc)
    lowered = message.lower()
    if exc.status_code == 429 or "rate limit" in lowered:
        return CompletionProxyError(
            "Rate limit exceeded. Please try again in a moment.",
            status_code=429,
            error_type="rate_limit_error",
        )
    if exc.status_code in {401, 403} or "api key" in lowered:
        return CompletionProxyError("AI service configuration error.", status_code=401, error_type="auth_error")
    if exc.status_code in {400, 413} and ("context" in lowered or "token" in lowered):
        return CompletionProxyError(
            "Message too long. Please try a shorter message or fewer files.",
            status_code=400,
            error_type="context_length_error",
        )
    return CompletionProxyError(message)
