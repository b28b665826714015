"""Chat and message persistence services."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from chat_assistant.context_window import estimate_total_tokens, get_model_config, needs_trimming
from chat_assistant.models.chat import Chat
from chat_assistant.models.message import Message
from chat_assistant.schemas.chat import ChatRead, ChatUpdate
from chat_assistant.schemas.message import Attachment, ChatMessage
from chat_assistant.schemas.turn import ContextStatus


class ChatNotFoundError(RuntimeError):
    """Raised when a chat or message id does not exist."""


def new_chat_id() -> str:
    return f"chat-{uuid4().hex}"


def create_chat(
    db: Session,
    *,
    title: str,
    user_id: str | None = None,
    chat_id: str | None = None,
    created_at: datetime | None = None,
) -> Chat:
    """Persist an empty chat."""

    now = created_at or datetime.now(timezone.utc)
    chat = Chat(
        id=chat_id or new_chat_id(),
        title=title,
        user_id=user_id,
        is_pinned=False,
        is_archived=False,
        created_at=now,
        updated_at=now,
    )
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat


def get_chat(db: Session, chat_id: str) -> Chat:
    chat = db.get(Chat, chat_id)
    if chat is None:
        raise ChatNotFoundError(f"Chat {chat_id} was not found.")
    return chat


def list_chats(db: Session, *, user_id: str | None = None, include_archived: bool = False) -> list[Chat]:
    """Return chats with pinned ones first, then most recently updated."""

    stmt = select(Chat)
    if user_id is not None:
        stmt = stmt.where(Chat.user_id == user_id)
    if not include_archived:
        stmt = stmt.where(Chat.is_archived.is_(False))
    stmt = stmt.order_by(Chat.is_pinned.desc(), Chat.updated_at.desc(), Chat.id.asc())
    return list(db.scalars(stmt).all())


def update_chat(db: Session, chat_id: str, payload: ChatUpdate) -> Chat:
    chat = get_chat(db, chat_id)
    for field_name, value in payload.model_dump(exclude_none=True).items():
        setattr(chat, field_name, value)
    chat.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(chat)
    return chat


def delete_chat(db: Session, chat_id: str) -> None:
    chat = get_chat(db, chat_id)
    db.execute(delete(Message).where(Message.chat_id == chat.id))
    db.delete(chat)
    db.commit()


def list_chat_messages(db: Session, chat_id: str) -> list[ChatMessage]:
    """Return durable messages for a chat in conversation order."""

    stmt = select(Message).where(Message.chat_id == chat_id).order_by(Message.position.asc())
    return [to_chat_message(row) for row in db.scalars(stmt).all()]


def append_message(db: Session, chat_id: str, message: ChatMessage) -> Message:
    """Append a finalized message after the chat's current last message."""

    if message.is_streaming:
        raise ValueError("Streaming messages cannot be persisted.")
    chat = get_chat(db, chat_id)
    last_position = db.scalar(select(func.max(Message.position)).where(Message.chat_id == chat_id))
    row = Message(
        id=message.id,
        chat_id=chat_id,
        position=(last_position if last_position is not None else -1) + 1,
        role=message.role,
        content=message.content,
        attachments_json=[item.model_dump() for item in message.attachments],
        metadata_json=dict(message.metadata),
        created_at=message.created_at,
    )
    db.add(row)
    chat.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    return row


def replace_message(db: Session, chat_id: str, message: ChatMessage) -> Message:
    """Overwrite content and metadata of an existing message, keeping its identity."""

    row = db.get(Message, message.id)
    if row is None or row.chat_id != chat_id:
        raise ChatNotFoundError(f"Message {message.id} was not found in chat {chat_id}.")
    row.content = message.content
    row.metadata_json = dict(message.metadata)
    row.attachments_json = [item.model_dump() for item in message.attachments]
    get_chat(db, chat_id).updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    return row


def delete_messages_after(db: Session, chat_id: str, message_id: str) -> int:
    """Delete every message positioned after ``message_id``; returns the count removed."""

    row = db.get(Message, message_id)
    if row is None or row.chat_id != chat_id:
        raise ChatNotFoundError(f"Message {message_id} was not found in chat {chat_id}.")
    result = db.execute(
        delete(Message).where(Message.chat_id == chat_id, Message.position > row.position)
    )
    db.commit()
    return int(result.rowcount or 0)


def to_chat_message(row: Message) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        role=row.role,
        content=row.content,
        created_at=row.created_at,
        attachments=[Attachment.model_validate(item) for item in row.attachments_json or []],
        metadata=dict(row.metadata_json or {}),
    )


def to_chat_read(chat: Chat) -> ChatRead:
    return ChatRead(
        id=chat.id,
        title=chat.title,
        user_id=chat.user_id,
        is_pinned=chat.is_pinned,
        is_archived=chat.is_archived,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


class ChatHistoryStore(Protocol):
    """Durable history sink used by the conversation controller."""

    def save_chat(self, chat: ChatRead) -> None:
        """Persist a chat header created by the controller."""

    def append_message(self, chat_id: str, message: ChatMessage) -> None:
        """Persist a finalized message."""

    def replace_message(self, chat_id: str, message: ChatMessage) -> None:
        """Persist an edited message."""

    def truncate_after(self, chat_id: str, message_id: str) -> None:
        """Delete every message after ``message_id``."""


class SqlChatHistoryStore:
    """Write-through store opening one session per operation."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def save_chat(self, chat: ChatRead) -> None:
        with self.session_factory() as db:
            if db.get(Chat, chat.id) is None:
                create_chat(
                    db,
                    title=chat.title,
                    user_id=chat.user_id,
                    chat_id=chat.id,
                    created_at=chat.created_at,
                )

    def append_message(self, chat_id: str, message: ChatMessage) -> None:
        with self.session_factory() as db:
            append_message(db, chat_id, message)

    def replace_message(self, chat_id: str, message: ChatMessage) -> None:
        with self.session_factory() as db:
            replace_message(db, chat_id, message)

    def truncate_after(self, chat_id: str, message_id: str) -> None:
        with self.session_factory() as db:
            delete_messages_after(db, chat_id, message_id)

    def load(self, chat_id: str) -> tuple[ChatRead, list[ChatMessage]]:
        with self.session_factory() as db:
            chat = get_chat(db, chat_id)
            return to_chat_read(chat), list_chat_messages(db, chat_id)


def get_context_status(db: Session, chat_id: str, model: str) -> ContextStatus:
    """Estimate the stored history against ``model``'s context budget."""

    get_chat(db, chat_id)
    outbound = [message.to_outbound() for message in list_chat_messages(db, chat_id)]
    config = get_model_config(model)
    return ContextStatus(
        chat_id=chat_id,
        model=config.model_id,
        model_name=config.name,
        max_tokens=config.max_tokens,
        budget=config.effective_budget,
        total_tokens=estimate_total_tokens(outbound),
        needs_trimming=needs_trimming(outbound, config.model_id),
    )
