"""Server-sent event frame codec for chat completion streams."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Final

DONE_SENTINEL: Final = "[DONE]"
DONE_FRAME: Final = f"data: {DONE_SENTINEL}\n\n"
_DATA_PREFIX = "data:"


@dataclass(frozen=True, slots=True)
class SseDelta:
    """One text fragment carried by a ``data:`` frame."""

    text: str


class _Done:
    __slots__ = ()

    def __repr__(self) -> str:
        return "SSE_DONE"


SSE_DONE: Final = _Done()


def parse_sse_line(line: str) -> SseDelta | _Done | None:
    """Decode one stream line.

    Returns ``SSE_DONE`` for the terminal sentinel, an ``SseDelta`` for a
    frame carrying text, and None for anything else (blank lines, comments,
    non-data fields, unparseable JSON, frames without text).
    """

    stripped = line.strip()
    if not stripped.startswith(_DATA_PREFIX):
        return None
    data = stripped[len(_DATA_PREFIX) :].strip()
    if data == DONE_SENTINEL:
        return SSE_DONE
    try:
        decoded = json.loads(data)
        content = decoded["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError, json.JSONDecodeError):
        return None
    if not isinstance(content, str) or not content:
        return None
    return SseDelta(content)


def encode_delta_frame(text: str) -> str:
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n"


def extract_json_content(body: str) -> str:
    """Return assistant text from a non-streamed completion body.

    Raises ValueError when the body carries no usable text.
    """

    try:
        decoded: Any = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValueError("completion body is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise ValueError("completion body is not a JSON object")

    content: Any = None
    try:
        content = decoded["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = decoded.get("content") or decoded.get("message")
    if not isinstance(content, str):
        raise ValueError("completion body has no assistant content")
    return content
