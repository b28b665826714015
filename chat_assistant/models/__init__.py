"""ORM models package exports."""

from chat_assistant.models.chat import Chat
from chat_assistant.models.message import Message

__all__ = ["Chat", "Message"]
