"""Approximate token estimation for budgeting.

This is not a tokenizer. Budget guarantees are stated against these
estimates, not against provider-side token counts.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

CHARS_PER_TOKEN = 4
ROLE_TOKENS = 2
FORMAT_TOKENS = 3
MESSAGE_OVERHEAD_TOKENS = ROLE_TOKENS + FORMAT_TOKENS


def estimate_tokens(text: str | None) -> int:
    """Return ``ceil(len(text) / 4)``; empty text costs nothing."""

    if not text:
        return 0
    return -(-len(text) // CHARS_PER_TOKEN)


def estimate_message_tokens(message: Mapping[str, Any]) -> int:
    """Content estimate plus the fixed per-message overhead."""

    return MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message.get("content"))


def estimate_total_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
