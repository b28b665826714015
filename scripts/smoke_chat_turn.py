"""Run a real streamed conversation turn against the configured provider.

Usage (from repo root):
    python scripts/smoke_chat_turn.py "What is a context window?"
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chat_assistant.dependencies import get_completion_transport, get_memory_service
from chat_assistant.services.conversation import ConversationController, ConversationEvent
from chat_assistant.streaming import StreamingAssembler


async def _run(prompt: str) -> None:
    controller = ConversationController(
        StreamingAssembler(get_completion_transport()),
        memory=get_memory_service(),
    )

    def echo(event: ConversationEvent) -> None:
        if event.kind == "streaming_updated" and event.message is not None:
            print(f"\r{len(event.message.content)} chars streamed", end="", file=sys.stderr)

    controller.subscribe(echo)
    result = await controller.send(prompt)
    await controller.wait_for_background_jobs()
    print(file=sys.stderr)
    print(json.dumps(result.model_dump(mode="json") if result else None, indent=2))


def main() -> None:
    prompt = " ".join(sys.argv[1:]) or "Give me one sentence about streaming responses."
    asyncio.run(_run(prompt))


if __name__ == "__main__":
    main()
