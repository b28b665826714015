"""Background jobs run after a completed conversation turn."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from time import perf_counter

from chat_assistant.schemas.message import Attachment
from chat_assistant.services.attachments import describe_attachments_for_memory
from chat_assistant.services.memory import MemoryService, MemoryStoreResult

logger = logging.getLogger(__name__)


async def run_memory_store_job(
    memory: MemoryService,
    *,
    user_content: str,
    assistant_content: str,
    user_id: str,
    session_id: str,
    attachments: Sequence[Attachment] = (),
) -> list[MemoryStoreResult]:
    """Offer one (user, assistant) pair to the memory service.

    Never raises: a failing memory backend must not affect the conversation.
    """

    total_started = perf_counter()
    user_text = user_content + describe_attachments_for_memory(attachments)
    assistant_text = assistant_content
    if attachments:
        assistant_text += f" [Responded to message with {len(attachments)} files]"

    results: list[MemoryStoreResult] = []
    try:
        results.append(await memory.process_and_store(user_text, "user", user_id, session_id))
        results.append(await memory.process_and_store(assistant_text, "assistant", user_id, session_id))
    except Exception:
        logger.exception(
            "memory.store_job_failed user_id=%s session_id=%s elapsed_ms=%.2f",
            user_id,
            session_id,
            (perf_counter() - total_started) * 1000.0,
        )
        return results

    logger.info(
        "memory.store_job_timing user_id=%s session_id=%s stored=%d skipped=%d total_ms=%.2f",
        user_id,
        session_id,
        sum(1 for result in results if result.status == "ok"),
        sum(1 for result in results if result.status == "skipped"),
        (perf_counter() - total_started) * 1000.0,
    )
    return results
