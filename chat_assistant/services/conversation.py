"""Conversation turn orchestration.

A ``ConversationController`` is the single owner of one conversation's
message list. It serializes send, edit-and-regenerate and stop through a small
state machine, keeps the in-progress assistant reply as a transient message,
and only commits finalized messages to durable history.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from chat_assistant.context_window import (
    DEFAULT_MODEL,
    TrimOptions,
    TrimStrategy,
    trim_messages_for_context,
)
from chat_assistant.schemas.chat import ChatRead
from chat_assistant.schemas.message import Attachment, ChatMessage
from chat_assistant.schemas.turn import ContextInfo, TurnResult
from chat_assistant.services.attachments import (
    AttachmentTextLoader,
    build_attachment_context,
    load_attachment_texts,
)
from chat_assistant.services.background_jobs import run_memory_store_job
from chat_assistant.services.chats import ChatHistoryStore, SqlChatHistoryStore, new_chat_id
from chat_assistant.services.memory import MemoryService, retrieve_memory_snippets
from chat_assistant.services.prompting import (
    BASE_SYSTEM_PROMPT,
    build_completion_payload,
    build_system_instruction,
    derive_chat_title,
)
from chat_assistant.streaming import (
    Cancelled,
    Completed,
    StreamingAssembler,
    StreamingSession,
    StreamOutcome,
)

logger = logging.getLogger(__name__)

ERROR_NOTICE = "Sorry, I encountered an error. Please try again."

EventKind = Literal[
    "chat_created",
    "message_appended",
    "message_edited",
    "messages_truncated",
    "streaming_started",
    "streaming_updated",
    "streaming_completed",
    "streaming_discarded",
    "state_changed",
]


class ConversationError(RuntimeError):
    """Raised for invalid controller commands."""


class MessageNotFoundError(ConversationError):
    """Raised when a command names a message that is not in the conversation."""


class ControllerState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"


@dataclass(frozen=True, slots=True)
class ConversationOptions:
    """Per-conversation model and budgeting choices."""

    model: str = DEFAULT_MODEL
    strategy: TrimStrategy = TrimStrategy.SMART_TRIM
    preserve_last_n: int = 6
    system_prompt: str = BASE_SYSTEM_PROMPT
    memory_search_limit: int = 5

    def trim_options(self) -> TrimOptions:
        return TrimOptions(
            model=self.model,
            strategy=self.strategy,
            preserve_last_n=self.preserve_last_n,
            preserve_system_message=True,
        )


@dataclass(frozen=True, slots=True)
class ConversationEvent:
    kind: EventKind
    chat_id: str | None
    state: ControllerState
    message: ChatMessage | None = None


ConversationListener = Callable[[ConversationEvent], None]


class ConversationController:
    """Command interface (send, edit_and_regenerate, regenerate, stop) over one conversation."""

    def __init__(
        self,
        assembler: StreamingAssembler,
        *,
        options: ConversationOptions | None = None,
        memory: MemoryService | None = None,
        store: ChatHistoryStore | None = None,
        attachment_loader: AttachmentTextLoader | None = None,
        user_id: str = "default_user",
        chat: ChatRead | None = None,
        messages: Sequence[ChatMessage] = (),
    ) -> None:
        if messages and chat is None:
            raise ValueError("Existing messages require their chat.")
        self.assembler = assembler
        self.options = options or ConversationOptions()
        self.memory = memory
        self.store = store
        self.attachment_loader = attachment_loader
        self.user_id = user_id
        self.chat = chat
        self.state = ControllerState.IDLE
        self.streaming_message: ChatMessage | None = None
        self.last_budget: ContextInfo | None = None
        self._messages: list[ChatMessage] = [m for m in messages if not m.is_streaming]
        self._session: StreamingSession | None = None
        self._turn_seq = 0
        self._listeners: list[ConversationListener] = []
        self._background: set[asyncio.Task[object]] = set()
        self._write_lock = asyncio.Lock()

    @property
    def chat_id(self) -> str | None:
        return self.chat.id if self.chat is not None else None

    @property
    def messages(self) -> list[ChatMessage]:
        """Durable history."""

        return list(self._messages)

    @property
    def visible_messages(self) -> list[ChatMessage]:
        """Durable history plus the in-progress reply, if any."""

        if self.streaming_message is None:
            return list(self._messages)
        return [*self._messages, self.streaming_message]

    @property
    def is_idle(self) -> bool:
        """True when no turn is running and no memory job is pending."""

        return self.state is ControllerState.IDLE and not self._background

    def subscribe(self, listener: ConversationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def send(
        self,
        text: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> TurnResult | None:
        """Append a user turn and stream the assistant reply.

        Empty text without attachments is ignored. Any live turn is cancelled
        first so at most one session is bound to the conversation.
        """

        files = list(attachments or [])
        stripped = text.strip()
        if not stripped and not files:
            return None

        self.stop()
        turn_id = self._next_turn()
        self._set_state(ControllerState.SENDING)
        user_message = ChatMessage(role="user", content=text, attachments=files)
        try:
            if self.chat is None:
                await self._create_chat(derive_chat_title(stripped, has_attachments=bool(files)))
            await self._append(user_message)
        except BaseException:
            if turn_id == self._turn_seq:
                self.stop()
            raise
        return await self._run_turn(turn_id, user_message)

    async def edit_and_regenerate(self, message_id: str, new_text: str) -> TurnResult | None:
        """Replace a user message, drop everything after it, and regenerate.

        Returns None when rejected (a turn is active) or when the content is
        unchanged.
        """

        if self.state is not ControllerState.IDLE:
            logger.warning(
                "conversation.edit_rejected chat_id=%s message_id=%s state=%s",
                self.chat_id,
                message_id,
                self.state.value,
            )
            return None

        index = self._index_of(message_id)
        target = self._messages[index]
        if target.role != "user":
            raise ConversationError("Only user messages can be edited.")
        content = new_text.strip()
        if not content:
            raise ConversationError("Edited message content cannot be empty.")
        if content == target.content:
            return None

        metadata = dict(target.metadata)
        metadata["isEdited"] = True
        metadata.setdefault("originalContent", target.content)
        edited = target.model_copy(update={"content": content, "metadata": metadata})

        chat_id = self.chat.id
        turn_id = self._next_turn()
        self._set_state(ControllerState.SENDING)
        try:
            await self._write(lambda store: store.replace_message(chat_id, edited))
            self._messages[index] = edited
            self._emit("message_edited", edited)
            await self._truncate_after(turn_id, index)
        except BaseException:
            if turn_id == self._turn_seq:
                self.stop()
            raise
        if turn_id != self._turn_seq:
            return self._superseded(chat_id, edited)
        return await self._run_turn(turn_id, edited)

    async def regenerate(self) -> TurnResult | None:
        """Drop the replies after the last user message and run that turn again.

        Returns None when rejected (a turn is active) or when there is no user
        message to answer.
        """

        if self.state is not ControllerState.IDLE:
            logger.warning(
                "conversation.regenerate_rejected chat_id=%s state=%s",
                self.chat_id,
                self.state.value,
            )
            return None

        index = next(
            (i for i in range(len(self._messages) - 1, -1, -1) if self._messages[i].role == "user"),
            None,
        )
        if index is None:
            return None
        target = self._messages[index]

        chat_id = self.chat.id
        turn_id = self._next_turn()
        self._set_state(ControllerState.SENDING)
        try:
            await self._truncate_after(turn_id, index)
        except BaseException:
            if turn_id == self._turn_seq:
                self.stop()
            raise
        if turn_id != self._turn_seq:
            return self._superseded(chat_id, target)
        logger.info("conversation.regenerate chat_id=%s message_id=%s", chat_id, target.id)
        return await self._run_turn(turn_id, target)

    def stop(self) -> bool:
        """Cancel the live turn, if any, and clear transient state. Idempotent."""

        was_active = self.state is not ControllerState.IDLE
        self._turn_seq += 1
        session, self._session = self._session, None
        cancelled = session.cancel() if session is not None else False
        self._discard_streaming()
        if was_active:
            logger.info("conversation.stopped chat_id=%s", self.chat_id)
            self._set_state(ControllerState.IDLE)
        return cancelled or was_active

    async def wait_for_background_jobs(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run_turn(self, turn_id: int, user_message: ChatMessage) -> TurnResult:
        chat_id = self.chat.id
        model = self.options.model
        if turn_id != self._turn_seq:
            return self._superseded(chat_id, user_message)
        self._set_state(ControllerState.SENDING)
        try:
            memories = await retrieve_memory_snippets(
                self.memory,
                user_message.content,
                self.user_id,
                limit=self.options.memory_search_limit,
            )
            if turn_id != self._turn_seq:
                return self._superseded(chat_id, user_message)
            text_contents = await load_attachment_texts(user_message.attachments, self.attachment_loader)
            if turn_id != self._turn_seq:
                return self._superseded(chat_id, user_message)

            payload = self._build_payload(user_message, memories, text_contents)
            session = self.assembler.begin(payload)
            self._session = session
            self.streaming_message = ChatMessage(
                role="assistant",
                content="",
                metadata={"isStreaming": True, "model": model},
            )
            self._set_state(ControllerState.STREAMING)
            self._emit("streaming_started", self.streaming_message)

            unsubscribe = session.subscribe(lambda text: self._on_stream_text(session, text))
            try:
                outcome = await session.wait()
            finally:
                unsubscribe()
        except BaseException:
            if turn_id == self._turn_seq:
                self.stop()
            raise

        if turn_id != self._turn_seq:
            return self._superseded(chat_id, user_message)
        self._session = None
        return await self._reconcile(turn_id, chat_id, user_message, outcome, model)

    def _build_payload(
        self,
        user_message: ChatMessage,
        memories: list[str],
        text_contents: dict[str, str],
    ) -> dict[str, object]:
        system = build_system_instruction(
            memories,
            user_message.attachments,
            base_prompt=self.options.system_prompt,
        )
        history = [message.to_outbound() for message in self._messages]
        current = history[-1] if history and self._messages[-1].id == user_message.id else None
        system_entry = {"role": "system", "content": system}
        decision = trim_messages_for_context([system_entry, *history], self.options.trim_options())

        outbound: list[dict[str, str]] = []
        for entry in decision.selected:
            if entry is system_entry:
                continue
            if entry is current and user_message.attachments:
                entry = {
                    "role": entry["role"],
                    "content": entry["content"]
                    + build_attachment_context(user_message.attachments, text_contents),
                }
            outbound.append(entry)

        self.last_budget = ContextInfo(
            total_messages=len(history),
            sent_messages=len(outbound),
            removed_messages=decision.removed_count,
            total_tokens=decision.total_tokens,
            budget=decision.budget,
        )
        logger.info(
            "conversation.dispatch chat_id=%s model=%s strategy=%s sent=%d removed=%d tokens=%d attachments=%d",
            self.chat_id,
            self.options.model,
            decision.strategy.value,
            len(outbound),
            decision.removed_count,
            decision.total_tokens,
            len(user_message.attachments),
        )
        return build_completion_payload(outbound, model=self.options.model, system=system, stream=True)

    async def _reconcile(
        self,
        turn_id: int,
        chat_id: str,
        user_message: ChatMessage,
        outcome: StreamOutcome,
        model: str,
    ) -> TurnResult:
        try:
            if isinstance(outcome, Cancelled):
                return TurnResult(
                    chat_id=chat_id,
                    outcome="cancelled",
                    user_message=user_message,
                    context=self.last_budget,
                )

            if isinstance(outcome, Completed):
                final = ChatMessage(role="assistant", content=outcome.text, metadata={"model": model})
                await self._write(lambda store: store.append_message(chat_id, final))
                if turn_id == self._turn_seq:
                    finished, self.streaming_message = self.streaming_message, None
                    self._emit("streaming_completed", finished)
                self._messages.append(final)
                self._emit("message_appended", final)
                self._schedule_memory_job(chat_id, user_message, final)
                return TurnResult(
                    chat_id=chat_id,
                    outcome="completed",
                    user_message=user_message,
                    assistant_message=final,
                    context=self.last_budget,
                )

            self._discard_streaming()
            notice = ChatMessage(role="assistant", content=ERROR_NOTICE)
            logger.warning("conversation.turn_failed chat_id=%s reason=%s", chat_id, outcome.reason)
            await self._append(notice)
            return TurnResult(
                chat_id=chat_id,
                outcome="failed",
                user_message=user_message,
                assistant_message=notice,
                context=self.last_budget,
                error=outcome.reason,
            )
        finally:
            if turn_id == self._turn_seq:
                self._discard_streaming()
                self._set_state(ControllerState.IDLE)

    def _superseded(self, chat_id: str, user_message: ChatMessage) -> TurnResult:
        return TurnResult(chat_id=chat_id, outcome="cancelled", user_message=user_message)

    def _on_stream_text(self, session: StreamingSession, text: str) -> None:
        if session is not self._session or self.streaming_message is None:
            return
        self.streaming_message = self.streaming_message.model_copy(update={"content": text})
        self._emit("streaming_updated", self.streaming_message)

    def _schedule_memory_job(self, chat_id: str, user_message: ChatMessage, reply: ChatMessage) -> None:
        if self.memory is None:
            return
        task = asyncio.get_running_loop().create_task(
            run_memory_store_job(
                self.memory,
                user_content=user_message.content,
                assistant_content=reply.content,
                user_id=self.user_id,
                session_id=chat_id,
                attachments=user_message.attachments,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _create_chat(self, title: str) -> None:
        now = datetime.now(timezone.utc)
        chat = ChatRead(
            id=new_chat_id(),
            title=title,
            user_id=self.user_id,
            is_pinned=False,
            is_archived=False,
            created_at=now,
            updated_at=now,
        )
        await self._write(lambda store: store.save_chat(chat))
        self.chat = chat
        self._emit("chat_created")

    async def _append(self, message: ChatMessage) -> None:
        chat_id = self.chat.id
        await self._write(lambda store: store.append_message(chat_id, message))
        self._messages.append(message)
        self._emit("message_appended", message)

    async def _truncate_after(self, turn_id: int, index: int) -> None:
        """Drop every message after ``index``, in the store first."""

        if turn_id != self._turn_seq or index + 1 >= len(self._messages):
            return
        chat_id = self.chat.id
        anchor = self._messages[index]
        await self._write(lambda store: store.truncate_after(chat_id, anchor.id))
        removed = len(self._messages) - index - 1
        del self._messages[index + 1 :]
        logger.info(
            "conversation.truncated chat_id=%s message_id=%s removed=%d",
            chat_id,
            anchor.id,
            removed,
        )
        self._emit("messages_truncated", anchor)

    async def _write(self, operation: Callable[[ChatHistoryStore], None]) -> None:
        """Run one store write in a worker thread; writes keep their call order."""

        if self.store is None:
            return
        async with self._write_lock:
            await asyncio.to_thread(operation, self.store)

    def _discard_streaming(self) -> None:
        discarded, self.streaming_message = self.streaming_message, None
        if discarded is not None:
            self._emit("streaming_discarded", discarded)

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise MessageNotFoundError(f"Message {message_id} was not found.")

    def _next_turn(self) -> int:
        self._turn_seq += 1
        return self._turn_seq

    def _set_state(self, state: ControllerState) -> None:
        if state is self.state:
            return
        self.state = state
        self._emit("state_changed")

    def _emit(self, kind: EventKind, message: ChatMessage | None = None) -> None:
        event = ConversationEvent(kind=kind, chat_id=self.chat_id, state=self.state, message=message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("conversation.listener_failed kind=%s chat_id=%s", kind, self.chat_id)


class ConversationRegistry:
    """Keeps one controller per chat so each conversation has a single owner.

    At most ``max_cached`` controllers are held; the least recently used idle
    ones are dropped beyond that and reload their history on next use.
    """

    def __init__(
        self,
        assembler: StreamingAssembler,
        store: SqlChatHistoryStore,
        *,
        memory: MemoryService | None = None,
        attachment_loader: AttachmentTextLoader | None = None,
        default_user_id: str = "default_user",
        max_cached: int = 256,
    ) -> None:
        self.assembler = assembler
        self.store = store
        self.memory = memory
        self.attachment_loader = attachment_loader
        self.default_user_id = default_user_id
        self.max_cached = max(1, max_cached)
        self._controllers: OrderedDict[str, ConversationController] = OrderedDict()

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._controllers

    def __len__(self) -> int:
        return len(self._controllers)

    async def get(self, chat_id: str) -> ConversationController:
        """Return the controller for ``chat_id``, loading history on first use."""

        controller = self._controllers.get(chat_id)
        if controller is not None:
            self._controllers.move_to_end(chat_id)
            return controller

        chat, messages = await asyncio.to_thread(self.store.load, chat_id)
        controller = self._controllers.get(chat_id)
        if controller is None:
            controller = self._build(chat.user_id or self.default_user_id, chat=chat, messages=messages)
            self._remember(chat_id, controller)
        return controller

    def create(self, user_id: str | None = None) -> ConversationController:
        """Return a controller without a chat; it registers itself once the chat exists."""

        controller = self._build(user_id or self.default_user_id)

        def register(event: ConversationEvent) -> None:
            if event.kind == "chat_created" and event.chat_id is not None:
                unsubscribe()
                self._remember(event.chat_id, controller)

        unsubscribe = controller.subscribe(register)
        return controller

    def forget(self, chat_id: str) -> None:
        controller = self._controllers.pop(chat_id, None)
        if controller is not None:
            controller.stop()

    def _remember(self, chat_id: str, controller: ConversationController) -> None:
        self._controllers[chat_id] = controller
        self._controllers.move_to_end(chat_id)
        overflow = len(self._controllers) - self.max_cached
        for cached_id, cached in list(self._controllers.items()):
            if overflow <= 0:
                break
            if cached_id == chat_id or not cached.is_idle:
                continue
            del self._controllers[cached_id]
            overflow -= 1
            logger.info("conversation.evicted chat_id=%s cached=%d", cached_id, len(self._controllers))

    def _build(
        self,
        user_id: str,
        *,
        chat: ChatRead | None = None,
        messages: Sequence[ChatMessage] = (),
    ) -> ConversationController:
        return ConversationController(
            self.assembler,
            memory=self.memory,
            store=self.store,
            attachment_loader=self.attachment_loader,
            user_id=user_id,
            chat=chat,
            messages=messages,
        )
