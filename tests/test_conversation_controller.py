"""Tests for the conversation controller state machine."""

from __future__ import annotations

import asyncio
import threading
import unittest
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chat_assistant.context_window import TrimStrategy
from chat_assistant.models.base import Base
from chat_assistant.models.chat import Chat
from chat_assistant.models.message import Message
from chat_assistant.schemas.chat import ChatRead
from chat_assistant.schemas.message import Attachment, ChatMessage
from chat_assistant.services.chats import ChatNotFoundError, SqlChatHistoryStore, create_chat, list_chat_messages
from chat_assistant.services.conversation import (
    ERROR_NOTICE,
    ControllerState,
    ConversationController,
    ConversationError,
    ConversationEvent,
    ConversationOptions,
    ConversationRegistry,
    MessageNotFoundError,
)
from chat_assistant.services.memory import LocalMemoryService, MemoryItem, MemoryServiceError, MemoryStoreResult
from chat_assistant.services.prompting import BASE_SYSTEM_PROMPT
from chat_assistant.streaming import StreamingAssembler, TransportError, TransportResponse
from chat_assistant.streaming.sse import DONE_FRAME, encode_delta_frame


@dataclass
class _Script:
    deltas: list[str]
    done: bool = True
    gate: asyncio.Event | None = None
    error: Exception | None = None


@dataclass
class _ScriptedTransport:
    """Plays queued SSE scripts; a gate pauses the stream after its first delta."""

    scripts: list[_Script] = field(default_factory=list)
    payloads: list[dict] = field(default_factory=list)

    def queue(self, *deltas: str, done: bool = True, gate: asyncio.Event | None = None) -> None:
        self.scripts.append(_Script(list(deltas), done=done, gate=gate))

    def fail(self, error: Exception) -> None:
        self.scripts.append(_Script([], error=error))

    @asynccontextmanager
    async def open(self, payload: dict):
        self.payloads.append(payload)
        script = self.scripts.pop(0) if self.scripts else _Script(["ok"])
        if script.error is not None:
            raise script.error
        yield TransportResponse(content_type="text/event-stream", lines=self._lines(script))

    async def _lines(self, script: _Script):
        for index, delta in enumerate(script.deltas):
            if index == 1 and script.gate is not None:
                await script.gate.wait()
            yield encode_delta_frame(delta).strip()
            yield ""
        if script.done:
            yield DONE_FRAME.strip()


class _StubLoader:
    async def load_text(self, attachment: Attachment) -> str | None:
        return "file body" if attachment.type.startswith("text/") else None


class _FailingMemory:
    async def search(self, query: str, user_id: str, limit: int = 10) -> list[MemoryItem]:
        raise MemoryServiceError("memory offline")

    async def process_and_store(self, content: str, role: str, user_id: str, session_id: str) -> MemoryStoreResult:
        raise MemoryServiceError("memory offline")

    async def list_user_memories(self, user_id: str) -> list[MemoryItem]:
        return []

    async def delete(self, memory_id: str) -> bool:
        return False


class _ListStore:
    """In-memory history store."""

    def __init__(self) -> None:
        self.chats: list[ChatRead] = []
        self.messages: list[ChatMessage] = []

    @property
    def contents(self) -> list[str]:
        return [message.content for message in self.messages]

    def save_chat(self, chat: ChatRead) -> None:
        self.chats.append(chat)

    def append_message(self, chat_id: str, message: ChatMessage) -> None:
        self.messages.append(message)

    def replace_message(self, chat_id: str, message: ChatMessage) -> None:
        self.messages = [message if m.id == message.id else m for m in self.messages]

    def truncate_after(self, chat_id: str, message_id: str) -> None:
        ids = [m.id for m in self.messages]
        del self.messages[ids.index(message_id) + 1 :]


class _FlakyStore(_ListStore):
    """Rejects assistant replies while ``fail_replies`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_replies = True

    def append_message(self, chat_id: str, message: ChatMessage) -> None:
        if message.role == "assistant" and self.fail_replies:
            raise RuntimeError("database is locked")
        super().append_message(chat_id, message)


class _BlockingStore(_ListStore):
    """Holds every message write until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def append_message(self, chat_id: str, message: ChatMessage) -> None:
        self.entered.set()
        self.release.wait(timeout=5)
        super().append_message(chat_id, message)


def _chat(chat_id: str = "chat-1") -> ChatRead:
    now = datetime(2026, 10, 17, tzinfo=timezone.utc)
    return ChatRead(
        id=chat_id,
        title="Existing",
        user_id="user-1",
        is_pinned=False,
        is_archived=False,
        created_at=now,
        updated_at=now,
    )


def _text_attachment() -> Attachment:
    return Attachment(
        original_name="notes.txt",
        size=1024,
        type="text/plain",
        url="https://files.test/notes.txt",
        public_id="p-notes",
    )


class ConversationControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.transport = _ScriptedTransport()
        self.memory = LocalMemoryService()
        self.controller = ConversationController(
            StreamingAssembler(self.transport),
            memory=self.memory,
            attachment_loader=_StubLoader(),
            user_id="user-1",
        )
        self.events: list[ConversationEvent] = []
        self.controller.subscribe(self.events.append)

    def _kinds(self) -> list[str]:
        kinds: list[str] = []
        for event in self.events:
            if kinds and kinds[-1] == event.kind == "streaming_updated":
                continue
            kinds.append(event.kind)
        return kinds

    def _seed(self, *contents: str) -> list[ChatMessage]:
        messages = [
            ChatMessage(role="user" if index % 2 == 0 else "assistant", content=content)
            for index, content in enumerate(contents)
        ]
        self.controller = ConversationController(
            StreamingAssembler(self.transport),
            memory=self.memory,
            user_id="user-1",
            chat=_chat(),
            messages=messages,
        )
        self.controller.subscribe(self.events.append)
        return messages

    async def _wait_for_first_delta(self) -> None:
        first_delta = asyncio.Event()

        def watch(event: ConversationEvent) -> None:
            if event.kind == "streaming_updated":
                first_delta.set()

        unsubscribe = self.controller.subscribe(watch)
        await asyncio.wait_for(first_delta.wait(), timeout=2)
        unsubscribe()

    async def test_send_streams_and_finalizes_assistant_message(self) -> None:
        self.transport.queue("Hel", "lo", " world")
        result = await self.controller.send("Hello there")

        self.assertEqual(result.outcome, "completed")
        self.assertEqual(result.assistant_message.content, "Hello world")
        self.assertEqual(result.assistant_message.metadata, {"model": "llama3-8b-8192"})
        self.assertEqual([m.role for m in self.controller.messages], ["user", "assistant"])
        self.assertIsNone(self.controller.streaming_message)
        self.assertIs(self.controller.state, ControllerState.IDLE)
        self.assertEqual(self.controller.chat.title, "Hello there")
        self.assertEqual(
            self._kinds(),
            [
                "state_changed",
                "chat_created",
                "message_appended",
                "state_changed",
                "streaming_started",
                "streaming_updated",
                "streaming_completed",
                "message_appended",
                "state_changed",
            ],
        )

        payload = self.transport.payloads[0]
        self.assertEqual(payload["messages"][0], {"role": "system", "content": BASE_SYSTEM_PROMPT})
        self.assertEqual(payload["messages"][-1], {"role": "user", "content": "Hello there"})
        self.assertTrue(payload["stream"])
        self.assertEqual(result.context.sent_messages, 1)
        self.assertEqual(result.context.removed_messages, 0)

    async def test_transient_message_is_visible_only_while_streaming(self) -> None:
        gate = asyncio.Event()
        self.transport.queue("Hel", "lo", gate=gate)
        task = asyncio.create_task(self.controller.send("hi there"))
        await self._wait_for_first_delta()

        self.assertIs(self.controller.state, ControllerState.STREAMING)
        streaming = self.controller.streaming_message
        self.assertEqual(streaming.content, "Hel")
        self.assertTrue(streaming.is_streaming)
        self.assertEqual(self.controller.visible_messages[-1], streaming)
        self.assertEqual(len(self.controller.messages), 1)

        gate.set()
        result = await task
        self.assertEqual(result.assistant_message.content, "Hello")
        self.assertFalse(self.controller.messages[-1].is_streaming)

    async def test_empty_send_is_ignored(self) -> None:
        self.assertIsNone(await self.controller.send("   "))
        self.assertEqual(self.events, [])
        self.assertEqual(self.transport.payloads, [])

    async def test_attachment_context_is_sent_but_not_stored(self) -> None:
        self.transport.queue("Noted")
        result = await self.controller.send("", [_text_attachment()])

        self.assertEqual(self.controller.chat.title, "File conversation")
        self.assertEqual(result.user_message.content, "")
        outbound_user = self.transport.payloads[0]["messages"][-1]
        self.assertIn("=== ATTACHED FILES ===", outbound_user["content"])
        self.assertIn("--- Content of notes.txt ---\nfile body", outbound_user["content"])
        self.assertIn("The user has shared files with you:", self.transport.payloads[0]["messages"][0]["content"])
        self.assertEqual(self.controller.messages[0].content, "")
        self.assertEqual(self.controller.messages[0].attachments, [_text_attachment()])

    async def test_retrieved_memories_extend_system_instruction(self) -> None:
        await self.memory.process_and_store("I like green tea.", "user", "user-1", "older-chat")
        self.transport.queue("Try sencha")
        await self.controller.send("Which green tea should I brew?")

        system = self.transport.payloads[0]["messages"][0]["content"]
        self.assertTrue(system.startswith(BASE_SYSTEM_PROMPT))
        self.assertIn("- User likes: green tea", system)

    async def test_completed_turn_schedules_memory_job(self) -> None:
        self.transport.queue("Lovely choice.")
        await self.controller.send("I like oolong tea.")
        await self.controller.wait_for_background_jobs()

        memories = await self.memory.list_user_memories("user-1")
        self.assertEqual([item.memory for item in memories], ["User likes: oolong tea"])
        self.assertEqual(memories[0].metadata["sessionId"], self.controller.chat_id)

    async def test_memory_failures_never_surface(self) -> None:
        controller = ConversationController(StreamingAssembler(self.transport), memory=_FailingMemory())
        self.transport.queue("Fine")
        with self.assertLogs("chat_assistant", level="WARNING"):
            result = await controller.send("I like green tea.")
            await controller.wait_for_background_jobs()
        self.assertEqual(result.outcome, "completed")
        self.assertEqual(controller.messages[-1].content, "Fine")

    async def test_transport_failure_appends_error_notice(self) -> None:
        self.transport.fail(TransportError("Chat completion HTTP 500: boom", status_code=500))
        result = await self.controller.send("I like green tea.")
        await self.controller.wait_for_background_jobs()

        self.assertEqual(result.outcome, "failed")
        self.assertIn("boom", result.error)
        self.assertEqual([m.content for m in self.controller.messages], ["I like green tea.", ERROR_NOTICE])
        self.assertIsNone(self.controller.streaming_message)
        self.assertIs(self.controller.state, ControllerState.IDLE)
        self.assertIn("streaming_discarded", self._kinds())
        self.assertEqual(await self.memory.list_user_memories("user-1"), [])

    async def test_stream_without_sentinel_is_a_failure(self) -> None:
        self.transport.queue("partial", done=False)
        result = await self.controller.send("hello")
        self.assertEqual(result.outcome, "failed")
        self.assertEqual(self.controller.messages[-1].content, ERROR_NOTICE)

    async def test_stop_mid_stream_discards_transient_message(self) -> None:
        gate = asyncio.Event()
        self.transport.queue("Hel", "lo", gate=gate)
        task = asyncio.create_task(self.controller.send("I like green tea."))
        await self._wait_for_first_delta()

        self.assertTrue(self.controller.stop())
        gate.set()
        result = await task
        await self.controller.wait_for_background_jobs()

        self.assertEqual(result.outcome, "cancelled")
        self.assertIsNone(result.assistant_message)
        self.assertEqual([m.role for m in self.controller.messages], ["user"])
        self.assertIsNone(self.controller.streaming_message)
        self.assertIs(self.controller.state, ControllerState.IDLE)
        self.assertIn("streaming_discarded", self._kinds())
        self.assertFalse(self.controller.stop())
        self.assertEqual(await self.memory.list_user_memories("user-1"), [])

    async def test_stop_then_resend_finalizes_exactly_one_reply(self) -> None:
        gate = asyncio.Event()
        self.transport.queue("Fir", "st", gate=gate)
        self.transport.queue("Second reply")
        first = asyncio.create_task(self.controller.send("first question"))
        await self._wait_for_first_delta()

        self.controller.stop()
        second = await self.controller.send("second question")
        gate.set()
        first_result = await first

        self.assertEqual(first_result.outcome, "cancelled")
        self.assertEqual(second.outcome, "completed")
        assistants = [m for m in self.controller.messages if m.role == "assistant"]
        self.assertEqual([m.content for m in assistants], ["Second reply"])
        self.assertEqual(
            [m.content for m in self.controller.messages],
            ["first question", "second question", "Second reply"],
        )

    async def test_send_while_streaming_supersedes_the_live_turn(self) -> None:
        gate = asyncio.Event()
        self.transport.queue("Old", " reply", gate=gate)
        self.transport.queue("New reply")
        first = asyncio.create_task(self.controller.send("first question"))
        await self._wait_for_first_delta()

        second = await self.controller.send("second question")
        gate.set()
        first_result = await first

        self.assertEqual(first_result.outcome, "cancelled")
        self.assertEqual(second.assistant_message.content, "New reply")
        self.assertEqual(sum(1 for m in self.controller.messages if m.role == "assistant"), 1)
        self.assertIs(self.controller.state, ControllerState.IDLE)

    async def test_edit_truncates_before_regenerating(self) -> None:
        seeded = self._seed("U1", "A1", "U2", "A2")
        snapshots: dict[str, list[str]] = {}

        def capture(event: ConversationEvent) -> None:
            if event.kind in {"messages_truncated", "streaming_started"}:
                snapshots[event.kind] = [m.content for m in self.controller.messages]

        self.controller.subscribe(capture)
        self.transport.queue("A1 regenerated")
        result = await self.controller.edit_and_regenerate(seeded[0].id, "U1 edited")

        self.assertEqual(snapshots["messages_truncated"], ["U1 edited"])
        self.assertEqual(snapshots["streaming_started"], ["U1 edited"])
        self.assertEqual(result.outcome, "completed")
        edited = self.controller.messages[0]
        self.assertEqual(edited.id, seeded[0].id)
        self.assertEqual(edited.metadata["originalContent"], "U1")
        self.assertTrue(edited.metadata["isEdited"])
        self.assertEqual([m.content for m in self.controller.messages], ["U1 edited", "A1 regenerated"])
        self.assertEqual(
            self.transport.payloads[0]["messages"][1:],
            [{"role": "user", "content": "U1 edited"}],
        )

    async def test_repeated_edit_keeps_first_original_content(self) -> None:
        seeded = self._seed("U1", "A1")
        await self.controller.edit_and_regenerate(seeded[0].id, "second")
        await self.controller.edit_and_regenerate(seeded[0].id, "third")
        self.assertEqual(self.controller.messages[0].metadata["originalContent"], "U1")
        self.assertEqual(self.controller.messages[0].content, "third")

    async def test_identical_edit_is_a_no_op(self) -> None:
        seeded = self._seed("U1", "A1")
        self.assertIsNone(await self.controller.edit_and_regenerate(seeded[0].id, "  U1 "))
        self.assertEqual(self.transport.payloads, [])
        self.assertEqual(self.events, [])

    async def test_invalid_edits_raise(self) -> None:
        seeded = self._seed("U1", "A1")
        with self.assertRaises(MessageNotFoundError):
            await self.controller.edit_and_regenerate("msg-missing", "x")
        with self.assertRaises(ConversationError):
            await self.controller.edit_and_regenerate(seeded[1].id, "rewrite the answer")
        with self.assertRaises(ConversationError):
            await self.controller.edit_and_regenerate(seeded[0].id, "   ")

    async def test_edit_is_rejected_while_a_turn_is_active(self) -> None:
        seeded = self._seed("U1", "A1")
        gate = asyncio.Event()
        self.transport.queue("Hel", "lo", gate=gate)
        task = asyncio.create_task(self.controller.send("U2"))
        await self._wait_for_first_delta()

        with self.assertLogs("chat_assistant.services.conversation", level="WARNING"):
            rejected = await self.controller.edit_and_regenerate(seeded[0].id, "changed")
        self.assertIsNone(rejected)
        self.assertEqual(self.controller.messages[0].content, "U1")

        gate.set()
        await task

    async def test_long_history_is_trimmed_before_dispatch(self) -> None:
        self._seed(*["x" * 1000 for _ in range(30)], "newest question")
        self.controller.options = ConversationOptions(strategy=TrimStrategy.SMART_TRIM)
        self.transport.queue("Answer")

        result = await self.controller.send("one more")

        context = result.context
        self.assertEqual(context.total_messages, 32)
        self.assertGreater(context.removed_messages, 0)
        self.assertLessEqual(context.total_tokens, context.budget)
        sent = self.transport.payloads[0]["messages"]
        self.assertEqual(sent[0]["role"], "system")
        self.assertEqual(sent[-1], {"role": "user", "content": "one more"})
        self.assertEqual(len(sent) - 1, context.sent_messages)

    async def test_send_stores_text_as_typed(self) -> None:
        self.transport.queue("Sure")
        result = await self.controller.send("  padded question  ")

        self.assertEqual(result.user_message.content, "  padded question  ")
        self.assertEqual(self.controller.messages[0].content, "  padded question  ")
        self.assertEqual(self.controller.chat.title, "padded question")

    async def test_regenerate_replaces_reply_to_last_user_message(self) -> None:
        seeded = self._seed("U1", "A1", "U2", "A2")
        self.transport.queue("A2 again")

        result = await self.controller.regenerate()

        self.assertEqual(result.outcome, "completed")
        self.assertEqual(result.user_message.id, seeded[2].id)
        self.assertEqual([m.content for m in self.controller.messages], ["U1", "A1", "U2", "A2 again"])
        self.assertEqual(self.transport.payloads[0]["messages"][-1], {"role": "user", "content": "U2"})
        self.assertIn("messages_truncated", self._kinds())
        self.assertIs(self.controller.state, ControllerState.IDLE)

    async def test_regenerate_answers_an_unanswered_user_message(self) -> None:
        self._seed("U1", "A1", "U2")
        self.transport.queue("A2")

        result = await self.controller.regenerate()

        self.assertEqual(result.assistant_message.content, "A2")
        self.assertEqual([m.content for m in self.controller.messages], ["U1", "A1", "U2", "A2"])
        self.assertNotIn("messages_truncated", self._kinds())

    async def test_regenerate_without_user_message_is_a_no_op(self) -> None:
        self.assertIsNone(await self.controller.regenerate())

        self.controller = ConversationController(
            StreamingAssembler(self.transport),
            chat=_chat(),
            messages=[ChatMessage(role="assistant", content="Welcome")],
        )
        self.assertIsNone(await self.controller.regenerate())
        self.assertEqual(self.transport.payloads, [])
        self.assertEqual(self.events, [])

    async def test_regenerate_is_rejected_while_a_turn_is_active(self) -> None:
        self._seed("U1", "A1")
        gate = asyncio.Event()
        self.transport.queue("Hel", "lo", gate=gate)
        task = asyncio.create_task(self.controller.send("U2"))
        await self._wait_for_first_delta()

        with self.assertLogs("chat_assistant.services.conversation", level="WARNING"):
            self.assertIsNone(await self.controller.regenerate())
        self.assertEqual(len(self.transport.payloads), 1)

        gate.set()
        result = await task
        self.assertEqual(result.assistant_message.content, "Hello")

    async def test_failed_reply_write_returns_to_idle(self) -> None:
        store = _FlakyStore()
        controller = ConversationController(StreamingAssembler(self.transport), store=store)
        self.transport.queue("Hel", "lo")

        with self.assertRaises(RuntimeError):
            await controller.send("question")

        self.assertIs(controller.state, ControllerState.IDLE)
        self.assertIsNone(controller.streaming_message)
        self.assertEqual([m.role for m in controller.messages], ["user"])
        self.assertEqual(store.contents, ["question"])

        store.fail_replies = False
        self.transport.queue("Answer")
        result = await controller.edit_and_regenerate(controller.messages[0].id, "question again")

        self.assertEqual(result.outcome, "completed")
        self.assertEqual(store.contents, ["question again", "Answer"])
        self.assertEqual([m.content for m in controller.messages], store.contents)

    async def test_slow_store_does_not_stall_other_conversations(self) -> None:
        store = _BlockingStore()
        slow = ConversationController(StreamingAssembler(_ScriptedTransport()), store=store)
        self.transport.queue("fast reply")

        slow_turn = asyncio.create_task(slow.send("first chat"))
        self.assertTrue(await asyncio.to_thread(store.entered.wait, 2))

        result = await asyncio.wait_for(self.controller.send("second chat"), timeout=2)
        self.assertEqual(result.assistant_message.content, "fast reply")
        self.assertEqual(store.contents, [])
        self.assertIs(slow.state, ControllerState.SENDING)

        store.release.set()
        slow_result = await asyncio.wait_for(slow_turn, timeout=5)
        self.assertEqual(slow_result.outcome, "completed")
        self.assertEqual(store.contents, ["first chat", "ok"])
        self.assertEqual([m.content for m in slow.messages], store.contents)

    def test_messages_require_a_chat(self) -> None:
        with self.assertRaises(ValueError):
            ConversationController(
                StreamingAssembler(_ScriptedTransport()),
                messages=[ChatMessage(role="user", content="orphan")],
            )


class PersistentConversationTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        with self.SessionLocal() as db:
            db.execute(delete(Message))
            db.execute(delete(Chat))
            db.commit()
        self.transport = _ScriptedTransport()
        self.store = SqlChatHistoryStore(self.SessionLocal)
        self.registry = ConversationRegistry(StreamingAssembler(self.transport), self.store)

    def _stored_contents(self, chat_id: str) -> list[str]:
        with self.SessionLocal() as db:
            return [m.content for m in list_chat_messages(db, chat_id)]

    async def test_transient_message_never_reaches_the_store(self) -> None:
        controller = self.registry.create("user-7")
        seen_while_streaming: list[list[str]] = []

        def inspect(event: ConversationEvent) -> None:
            if event.kind == "streaming_updated":
                seen_while_streaming.append(self._stored_contents(event.chat_id))

        controller.subscribe(inspect)
        self.transport.queue("Hel", "lo")
        result = await controller.send("Persist me")

        self.assertTrue(seen_while_streaming)
        self.assertTrue(all(contents == ["Persist me"] for contents in seen_while_streaming))
        self.assertEqual(self._stored_contents(result.chat_id), ["Persist me", "Hello"])
        self.assertIs(await self.registry.get(result.chat_id), controller)
        chat, _ = self.store.load(result.chat_id)
        self.assertEqual(chat.user_id, "user-7")
        self.assertEqual(chat.title, "Persist me")

    async def test_registry_loads_history_and_edit_truncates_store(self) -> None:
        with self.SessionLocal() as db:
            create_chat(db, title="Seeded", user_id="user-1", chat_id="chat-seeded")
        for role, content in (("user", "U1"), ("assistant", "A1"), ("user", "U2"), ("assistant", "A2")):
            self.store.append_message("chat-seeded", ChatMessage(role=role, content=content))

        controller = await self.registry.get("chat-seeded")
        self.assertIs(await self.registry.get("chat-seeded"), controller)
        self.assertEqual([m.content for m in controller.messages], ["U1", "A1", "U2", "A2"])

        self.transport.queue("A1 again")
        await controller.edit_and_regenerate(controller.messages[0].id, "U1 edited")
        self.assertEqual(self._stored_contents("chat-seeded"), ["U1 edited", "A1 again"])

        self.registry.forget("chat-seeded")
        self.assertIsNot(await self.registry.get("chat-seeded"), controller)
        with self.assertRaises(ChatNotFoundError):
            await self.registry.get("chat-missing")

    async def test_regenerate_truncates_store(self) -> None:
        with self.SessionLocal() as db:
            create_chat(db, title="Seeded", user_id="user-1", chat_id="chat-seeded")
        for role, content in (("user", "U1"), ("assistant", "A1"), ("user", "U2"), ("assistant", "A2")):
            self.store.append_message("chat-seeded", ChatMessage(role=role, content=content))

        controller = await self.registry.get("chat-seeded")
        self.transport.queue("A2 again")
        await controller.regenerate()

        self.assertEqual(self._stored_contents("chat-seeded"), ["U1", "A1", "U2", "A2 again"])

    async def test_registry_evicts_least_recently_used_idle_controllers(self) -> None:
        registry = ConversationRegistry(StreamingAssembler(self.transport), self.store, max_cached=1)
        with self.SessionLocal() as db:
            create_chat(db, title="A", chat_id="chat-a")
            create_chat(db, title="B", chat_id="chat-b")

        first = await registry.get("chat-a")
        with self.assertLogs("chat_assistant.services.conversation", level="INFO") as logs:
            await registry.get("chat-b")
        self.assertIn("conversation.evicted chat_id=chat-a", "\n".join(logs.output))
        self.assertNotIn("chat-a", registry)
        self.assertEqual(len(registry), 1)

        busy = await registry.get("chat-a")
        self.assertIsNot(busy, first)
        gate = asyncio.Event()
        first_delta = asyncio.Event()
        busy.subscribe(lambda event: first_delta.set() if event.kind == "streaming_updated" else None)
        self.transport.queue("Hel", "lo", gate=gate)
        task = asyncio.create_task(busy.send("still working"))
        await asyncio.wait_for(first_delta.wait(), timeout=2)

        await registry.get("chat-b")
        self.assertIn("chat-a", registry)
        self.assertIs(await registry.get("chat-a"), busy)

        gate.set()
        await task

    async def test_created_controller_registers_once(self) -> None:
        controller = self.registry.create()
        self.transport.queue("Hi")
        result = await controller.send("hello")

        self.assertIn(result.chat_id, self.registry)
        self.assertEqual(controller._listeners, [])


if __name__ == "__main__":
    unittest.main()
