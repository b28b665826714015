"""Chat history routes."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response
from sqlalchemy.orm import Session

from chat_assistant.db.dependencies import get_db
from chat_assistant.dependencies import get_conversation_registry
from chat_assistant.schemas.chat import ChatCreate, ChatDetail, ChatRead, ChatUpdate
from chat_assistant.schemas.common import ApiResponse
from chat_assistant.schemas.message import ChatMessage
from chat_assistant.services.chats import (
    ChatNotFoundError,
    create_chat,
    delete_chat,
    get_chat,
    list_chat_messages,
    list_chats,
    to_chat_read,
    update_chat,
)
from chat_assistant.services.conversation import ConversationRegistry


router = APIRouter(prefix="/chats")


@router.post("", response_model=ApiResponse[ChatRead], status_code=201)
def create_chat_route(payload: ChatCreate, db: Session = Depends(get_db)) -> ApiResponse[ChatRead]:
    """Create an empty chat."""

    chat = create_chat(db, title=payload.title, user_id=payload.user_id)
    return ApiResponse(data=to_chat_read(chat))


@router.get("", response_model=ApiResponse[list[ChatRead]])
def list_chats_route(
    user_id: str | None = Query(default=None, min_length=1),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> ApiResponse[list[ChatRead]]:
    """List chats, pinned first then most recently updated."""

    chats = list_chats(db, user_id=user_id, include_archived=include_archived)
    return ApiResponse(data=[to_chat_read(chat) for chat in chats])


@router.get("/{chat_id}", response_model=ApiResponse[ChatDetail])
def get_chat_route(
    chat_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[ChatDetail]:
    try:
        chat = get_chat(db, chat_id)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    detail = ChatDetail(**to_chat_read(chat).model_dump(), messages=list_chat_messages(db, chat_id))
    return ApiResponse(data=detail)


@router.patch("/{chat_id}", response_model=ApiResponse[ChatRead])
def update_chat_route(
    payload: ChatUpdate,
    chat_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[ChatRead]:
    """Rename, pin or archive a chat."""

    try:
        chat = update_chat(db, chat_id, payload)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(data=to_chat_read(chat))


@router.delete("/{chat_id}", status_code=204)
async def delete_chat_route(
    chat_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> Response:
    """Delete a chat and its messages, stopping any live turn first."""

    registry.forget(chat_id)
    try:
        await asyncio.to_thread(delete_chat, db, chat_id)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@router.get("/{chat_id}/messages", response_model=ApiResponse[list[ChatMessage]])
def get_chat_messages(
    chat_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[list[ChatMessage]]:
    """List durable messages for a chat."""

    try:
        get_chat(db, chat_id)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(data=list_chat_messages(db, chat_id))
