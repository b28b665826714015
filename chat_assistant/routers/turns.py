"""Conversation turn routes driving the per-chat controller."""

from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from chat_assistant.config import get_settings
from chat_assistant.context_window import DEFAULT_MODEL
from chat_assistant.db.dependencies import get_db
from chat_assistant.dependencies import get_conversation_registry
from chat_assistant.schemas.common import ApiResponse
from chat_assistant.schemas.message import MessageEditRequest
from chat_assistant.schemas.turn import ContextStatus, StopResult, TurnRequest, TurnResult
from chat_assistant.services.chats import ChatNotFoundError, get_context_status
from chat_assistant.services.conversation import (
    ControllerState,
    ConversationController,
    ConversationError,
    ConversationOptions,
    ConversationRegistry,
    MessageNotFoundError,
)


router = APIRouter()


async def _controller_for(registry: ConversationRegistry, chat_id: str) -> ConversationController:
    try:
        return await registry.get(chat_id)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _apply_options(controller: ConversationController, payload: TurnRequest) -> None:
    controller.options = ConversationOptions(
        model=payload.model,
        strategy=payload.strategy,
        preserve_last_n=payload.preserve_last_n,
        memory_search_limit=get_settings().memory_search_limit,
    )


async def _send(controller: ConversationController, payload: TurnRequest) -> TurnResult:
    _apply_options(controller, payload)
    result = await controller.send(payload.content, payload.attachments)
    if result is None:
        raise HTTPException(status_code=422, detail="Message content or attachments are required.")
    return result


@router.post("/turns", response_model=ApiResponse[TurnResult], status_code=201)
async def create_chat_turn(
    payload: TurnRequest,
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> ApiResponse[TurnResult]:
    """Start a new chat with its first user turn."""

    if not payload.content.strip() and not payload.attachments:
        raise HTTPException(status_code=422, detail="Message content or attachments are required.")
    controller = registry.create(payload.user_id)
    return ApiResponse(data=await _send(controller, payload))


@router.post("/chats/{chat_id}/turns", response_model=ApiResponse[TurnResult])
async def send_turn(
    payload: TurnRequest,
    chat_id: str = Path(..., min_length=1),
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> ApiResponse[TurnResult]:
    """Append a user message and stream the assistant reply to completion."""

    controller = await _controller_for(registry, chat_id)
    return ApiResponse(data=await _send(controller, payload))


@router.patch("/chats/{chat_id}/messages/{message_id}", response_model=ApiResponse[TurnResult | None])
async def edit_message(
    payload: MessageEditRequest,
    chat_id: str = Path(..., min_length=1),
    message_id: str = Path(..., min_length=1),
    model: str | None = Query(default=None, min_length=1),
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> ApiResponse[TurnResult | None]:
    """Edit a user message and regenerate from it; unchanged content is a no-op."""

    controller = await _controller_for(registry, chat_id)
    if controller.state is not ControllerState.IDLE:
        raise HTTPException(status_code=409, detail="A response is still being generated for this chat.")
    if model:
        controller.options = replace(controller.options, model=model)
    try:
        result = await controller.edit_and_regenerate(message_id, payload.content)
    except MessageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConversationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=result)


@router.post("/chats/{chat_id}/regenerate", response_model=ApiResponse[TurnResult | None])
async def regenerate_reply(
    chat_id: str = Path(..., min_length=1),
    model: str | None = Query(default=None, min_length=1),
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> ApiResponse[TurnResult | None]:
    """Answer the last user message again; a chat without one is a no-op."""

    controller = await _controller_for(registry, chat_id)
    if controller.state is not ControllerState.IDLE:
        raise HTTPException(status_code=409, detail="A response is still being generated for this chat.")
    if model:
        controller.options = replace(controller.options, model=model)
    return ApiResponse(data=await controller.regenerate())


@router.post("/chats/{chat_id}/stop", response_model=ApiResponse[StopResult])
async def stop_turn(
    chat_id: str = Path(..., min_length=1),
    registry: ConversationRegistry = Depends(get_conversation_registry),
) -> ApiResponse[StopResult]:
    """Cancel the live turn, if any."""

    controller = await _controller_for(registry, chat_id)
    return ApiResponse(data=StopResult(chat_id=chat_id, stopped=controller.stop()))


@router.get("/chats/{chat_id}/context", response_model=ApiResponse[ContextStatus])
def get_chat_context(
    chat_id: str = Path(..., min_length=1),
    model: str = Query(default=DEFAULT_MODEL, min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[ContextStatus]:
    """Report how the stored history compares with the model's context budget."""

    try:
        status = get_context_status(db, chat_id, model)
    except ChatNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(data=status)
