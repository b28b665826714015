"""Long-term memory routes."""

from fastapi import APIRouter, Depends, HTTPException, Path

from chat_assistant.dependencies import get_memory_service
from chat_assistant.schemas.common import ApiResponse
from chat_assistant.schemas.memory import (
    MemoryItemRead,
    MemorySearchRequest,
    MemoryStoreRequest,
    MemoryStoreResultRead,
)
from chat_assistant.services.memory import MemoryItem, MemoryService, MemoryServiceError


router = APIRouter(prefix="/memory")


def _to_read(item: MemoryItem) -> MemoryItemRead:
    return MemoryItemRead(
        id=item.id,
        memory=item.memory,
        score=item.score,
        user_id=item.user_id,
        metadata=item.metadata,
    )


@router.post("/search", response_model=ApiResponse[list[MemoryItemRead]])
async def search_memories(
    payload: MemorySearchRequest,
    memory: MemoryService = Depends(get_memory_service),
) -> ApiResponse[list[MemoryItemRead]]:
    """Search a user's memories by relevance."""

    try:
        items = await memory.search(payload.query, payload.user_id, payload.limit)
    except MemoryServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ApiResponse(data=[_to_read(item) for item in items])


@router.post("/store", response_model=ApiResponse[list[MemoryStoreResultRead]], status_code=201)
async def store_memories(
    payload: MemoryStoreRequest,
    memory: MemoryService = Depends(get_memory_service),
) -> ApiResponse[list[MemoryStoreResultRead]]:
    """Offer messages to the memory service; uninteresting ones are skipped."""

    results = []
    try:
        for message in payload.messages:
            result = await memory.process_and_store(
                message.content,
                message.role,
                payload.user_id,
                payload.session_id,
            )
            results.append(
                MemoryStoreResultRead(status=result.status, memory_id=result.memory_id, reason=result.reason)
            )
    except MemoryServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ApiResponse(data=results)


@router.get("/users/{user_id}", response_model=ApiResponse[list[MemoryItemRead]])
async def list_user_memories(
    user_id: str = Path(..., min_length=1),
    memory: MemoryService = Depends(get_memory_service),
) -> ApiResponse[list[MemoryItemRead]]:
    try:
        items = await memory.list_user_memories(user_id)
    except MemoryServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ApiResponse(data=[_to_read(item) for item in items])


@router.delete("/items/{memory_id}", response_model=ApiResponse[dict[str, bool]])
async def delete_memory(
    memory_id: str = Path(..., min_length=1),
    memory: MemoryService = Depends(get_memory_service),
) -> ApiResponse[dict[str, bool]]:
    """Delete one memory; ``deleted`` is False when it did not exist."""

    try:
        deleted = await memory.delete(memory_id)
    except MemoryServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ApiResponse(data={"deleted": deleted})
