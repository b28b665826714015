"""Process-wide collaborators injected into routers."""

from functools import lru_cache

from chat_assistant.config import get_settings
from chat_assistant.db.session import SessionLocal
from chat_assistant.services.attachments import AttachmentTextLoader, HttpAttachmentTextLoader
from chat_assistant.services.chats import SqlChatHistoryStore
from chat_assistant.services.conversation import ConversationRegistry
from chat_assistant.services.memory import MemoryService, get_default_memory_service
from chat_assistant.streaming import CompletionTransport, HttpxCompletionTransport, StreamingAssembler


@lru_cache
def get_completion_transport() -> CompletionTransport:
    settings = get_settings()
    return HttpxCompletionTransport(
        base_url=settings.groq_base_url,
        api_key=settings.groq_api_key,
        timeout_seconds=settings.chat_timeout_seconds,
    )


@lru_cache
def get_memory_service() -> MemoryService:
    return get_default_memory_service()


@lru_cache
def get_attachment_loader() -> AttachmentTextLoader:
    return HttpAttachmentTextLoader(timeout_seconds=get_settings().attachment_fetch_timeout_seconds)


@lru_cache
def get_conversation_registry() -> ConversationRegistry:
    """Return the registry owning one controller per chat."""

    return ConversationRegistry(
        StreamingAssembler(get_completion_transport()),
        SqlChatHistoryStore(SessionLocal),
        memory=get_memory_service(),
        attachment_loader=get_attachment_loader(),
        default_user_id=get_settings().default_user_id,
        max_cached=get_settings().conversation_cache_size,
    )
