"""Incremental assembly of one streamed model completion."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from chat_assistant.streaming.sse import SSE_DONE, SseDelta, extract_json_content, parse_sse_line
from chat_assistant.streaming.transport import CompletionTransport, TransportError

logger = logging.getLogger(__name__)

StreamListener = Callable[[str], None]

_RUNNING_TASKS: set[asyncio.Task[None]] = set()


class SessionState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Completed:
    text: str
    fallback: bool = False


@dataclass(frozen=True, slots=True)
class Cancelled:
    pass


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str
    error: BaseException | None = None


StreamOutcome = Completed | Cancelled | Failed


class StreamingSession:
    """Handle for one in-flight completion.

    ``text`` grows as deltas arrive. ``cancel()`` returns immediately; the
    transport is torn down in the background and later deltas are ignored.
    """

    def __init__(self, transport: CompletionTransport, payload: dict[str, Any]) -> None:
        self.id = f"stream-{uuid4().hex}"
        self.state = SessionState.PENDING
        self._transport = transport
        self._payload = payload
        self._chunks: list[str] = []
        self._listeners: list[StreamListener] = []
        self._outcome: StreamOutcome | None = None
        loop = asyncio.get_running_loop()
        self._done: asyncio.Future[StreamOutcome] = loop.create_future()
        self._task = loop.create_task(self._run(), name=self.id)
        _RUNNING_TASKS.add(self._task)
        self._task.add_done_callback(_RUNNING_TASKS.discard)

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def outcome(self) -> StreamOutcome | None:
        return self._outcome

    @property
    def is_active(self) -> bool:
        return self._outcome is None

    def subscribe(self, listener: StreamListener) -> Callable[[], None]:
        """Register ``listener`` for accumulated-text updates; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self) -> bool:
        """Abort the session. Returns False when it had already finished."""

        if self._outcome is not None:
            return False
        self._finish(Cancelled())
        self._task.cancel()
        logger.info("streaming.session_cancelled session_id=%s chars=%d", self.id, len(self.text))
        return True

    async def wait(self) -> StreamOutcome:
        """Wait for the terminal outcome."""

        return await asyncio.shield(self._done)

    async def _run(self) -> None:
        try:
            async with self._transport.open(self._payload) as response:
                if self._outcome is not None:
                    return
                self.state = SessionState.STREAMING
                if response.is_json:
                    body = "\n".join([line async for line in response.lines])
                    self._append(extract_json_content(body))
                    self._finish(Completed(self.text, fallback=True))
                    return
                async for line in response.lines:
                    if self._outcome is not None:
                        return
                    event = parse_sse_line(line)
                    if event is SSE_DONE:
                        self._finish(Completed(self.text))
                        return
                    if isinstance(event, SseDelta):
                        self._append(event.text)
                    elif line.strip():
                        logger.debug("streaming.frame_skipped session_id=%s line=%r", self.id, line[:200])
            self._finish(Failed("Stream ended before the completion sentinel"))
        except asyncio.CancelledError:
            self._finish(Cancelled())
            raise
        except (TransportError, ValueError) as exc:
            self._finish(Failed(str(exc), exc))
        except Exception as exc:
            logger.exception("streaming.session_crashed session_id=%s", self.id)
            self._finish(Failed(str(exc) or exc.__class__.__name__, exc))

    def _append(self, delta: str) -> None:
        if self._outcome is not None:
            return
        self._chunks.append(delta)
        accumulated = self.text
        for listener in list(self._listeners):
            try:
                listener(accumulated)
            except Exception:
                logger.exception("streaming.listener_failed session_id=%s", self.id)

    def _finish(self, outcome: StreamOutcome) -> None:
        if self._outcome is not None:
            return
        self._outcome = outcome
        if isinstance(outcome, Completed):
            self.state = SessionState.COMPLETED
        elif isinstance(outcome, Cancelled):
            self.state = SessionState.CANCELLED
        else:
            self.state = SessionState.FAILED
            logger.warning("streaming.session_failed session_id=%s reason=%s", self.id, outcome.reason)
        if not self._done.done():
            self._done.set_result(outcome)


class StreamingAssembler:
    """Starts streaming sessions over a shared transport."""

    def __init__(self, transport: CompletionTransport) -> None:
        self.transport = transport

    def begin(self, payload: dict[str, Any]) -> StreamingSession:
        """Dispatch ``payload``; must be called from inside a running event loop."""

        return StreamingSession(self.transport, payload)
