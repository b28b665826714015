"""Streaming completion assembly package."""

from chat_assistant.streaming.assembler import (
    Cancelled,
    Completed,
    Failed,
    SessionState,
    StreamingAssembler,
    StreamingSession,
    StreamOutcome,
)
from chat_assistant.streaming.transport import (
    CompletionTransport,
    HttpxCompletionTransport,
    TransportError,
    TransportResponse,
)

__all__ = [
    "Cancelled",
    "Completed",
    "CompletionTransport",
    "Failed",
    "HttpxCompletionTransport",
    "SessionState",
    "StreamOutcome",
    "StreamingAssembler",
    "StreamingSession",
    "TransportError",
    "TransportResponse",
]
