"""OpenAI-compatible completion proxy routes."""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import StreamingResponse

from chat_assistant.config import get_settings
from chat_assistant.context_window import MODEL_CONFIGS
from chat_assistant.dependencies import (
    get_attachment_loader,
    get_completion_transport,
    get_memory_service,
)
from chat_assistant.schemas.common import ApiResponse, ProviderErrorDetail
from chat_assistant.schemas.completion import CompletionRequest, ModelInfo
from chat_assistant.services.attachments import AttachmentTextLoader
from chat_assistant.services.background_jobs import run_memory_store_job
from chat_assistant.services.completions import (
    DEFAULT_SESSION_ID,
    CompletionProxyError,
    complete_once,
    open_completion_stream,
    prepare_completion,
)
from chat_assistant.services.memory import MemoryService
from chat_assistant.streaming import CompletionTransport


router = APIRouter()

_STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@router.post("/api/chat", response_model=None)
async def proxy_chat_completion(
    payload: CompletionRequest,
    background_tasks: BackgroundTasks,
    transport: CompletionTransport = Depends(get_completion_transport),
    memory: MemoryService = Depends(get_memory_service),
    attachment_loader: AttachmentTextLoader = Depends(get_attachment_loader),
) -> StreamingResponse | dict[str, Any]:
    """Forward a completion with memory and attachment context.

    Streams SSE frames when requested; falls back to a single JSON body when
    the provider fails before the first frame.
    """

    settings = get_settings()
    prepared = await prepare_completion(
        payload,
        memory=memory,
        attachment_loader=attachment_loader,
        default_user_id=settings.default_user_id,
        memory_search_limit=settings.memory_search_limit,
    )

    if payload.stream:
        frames = await open_completion_stream(transport, prepared)
        if frames is not None:
            return StreamingResponse(frames, media_type="text/event-stream", headers=_STREAM_HEADERS)

    try:
        body = await complete_once(transport, prepared)
    except CompletionProxyError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=ProviderErrorDetail(error=str(exc), type=exc.error_type).model_dump(),
        ) from exc

    background_tasks.add_task(
        run_memory_store_job,
        memory,
        user_content=prepared.user_content,
        assistant_content=body["choices"][0]["message"]["content"],
        user_id=prepared.user_id,
        session_id=prepared.session_id or DEFAULT_SESSION_ID,
        attachments=prepared.attachments,
    )
    return body


@router.get("/models", response_model=ApiResponse[list[ModelInfo]])
def list_models() -> ApiResponse[list[ModelInfo]]:
    """List models with their context window budgets."""

    return ApiResponse(
        data=[
            ModelInfo(
                model_id=config.model_id,
                name=config.name,
                max_tokens=config.max_tokens,
                max_output_tokens=config.max_output_tokens,
                reserve_tokens=config.reserve_tokens,
                budget=config.effective_budget,
            )
            for config in MODEL_CONFIGS.values()
        ]
    )
