"""Token-budgeted message selection for outbound model requests."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from chat_assistant.context_window.models import DEFAULT_MODEL, get_model_config
from chat_assistant.context_window.tokens import estimate_message_tokens, estimate_total_tokens

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Mapping[str, Any])


class TrimStrategy(str, Enum):
    """Eviction policy applied when a history exceeds its budget."""

    SLIDING_WINDOW = "sliding_window"
    SMART_TRIM = "smart_trim"
    EXPONENTIAL_DECAY = "exponential_decay"


@dataclass(frozen=True, slots=True)
class TrimOptions:
    """Budgeting knobs.

    ``max_tokens`` overrides the model's total capacity; the model's safety
    and output reservations are still subtracted from it.
    """

    model: str = DEFAULT_MODEL
    max_tokens: int | None = None
    strategy: TrimStrategy = TrimStrategy.SLIDING_WINDOW
    preserve_last_n: int = 4
    preserve_system_message: bool = True

    def budget(self) -> int:
        config = get_model_config(self.model)
        capacity = self.max_tokens if self.max_tokens is not None else config.max_tokens
        return capacity - config.reserve_tokens - config.max_output_tokens


@dataclass(slots=True)
class BudgetDecision(Generic[M]):
    """Selected messages in chronological order plus trimming statistics."""

    selected: list[M] = field(default_factory=list)
    removed_count: int = 0
    total_tokens: int = 0
    budget: int = 0
    strategy: TrimStrategy = TrimStrategy.SLIDING_WINDOW

    @property
    def trimmed(self) -> bool:
        return self.removed_count > 0


def trim_messages_for_context(
    messages: Sequence[M],
    options: TrimOptions | None = None,
) -> BudgetDecision[M]:
    """Reduce ``messages`` to fit the model budget using the selected strategy.

    Never raises: when nothing fits, the selection is empty (or only the
    preserved system messages).
    """

    opts = options or TrimOptions()
    strategy = TrimStrategy(opts.strategy)
    budget = opts.budget()
    items = list(messages)

    total = estimate_total_tokens(items)
    if total <= budget:
        return BudgetDecision(
            selected=items,
            removed_count=0,
            total_tokens=total,
            budget=budget,
            strategy=strategy,
        )

    if opts.preserve_system_message:
        system_messages = [m for m in items if m.get("role") == "system"]
        candidates = [m for m in items if m.get("role") != "system"]
    else:
        system_messages = []
        candidates = items

    working_budget = budget - estimate_total_tokens(system_messages)
    if strategy is TrimStrategy.SLIDING_WINDOW:
        kept = _sliding_window(candidates, working_budget, max(0, opts.preserve_last_n))
    elif strategy is TrimStrategy.SMART_TRIM:
        kept = _smart_trim(candidates, working_budget)
    else:
        kept = _exponential_decay(candidates, working_budget)

    selected = [*system_messages, *kept]
    decision = BudgetDecision(
        selected=selected,
        removed_count=len(candidates) - len(kept),
        total_tokens=estimate_total_tokens(selected),
        budget=budget,
        strategy=strategy,
    )
    logger.info(
        "context_window.trimmed strategy=%s input=%d selected=%d removed=%d total_tokens=%d budget=%d",
        strategy.value,
        len(items),
        len(selected),
        decision.removed_count,
        decision.total_tokens,
        budget,
    )
    return decision


def _sliding_window(messages: list[M], budget: int, preserve_last_n: int) -> list[M]:
    tail = messages[-preserve_last_n:] if preserve_last_n else []
    tail_tokens = estimate_total_tokens(tail)
    if tail_tokens > budget:
        return _admit_newest_first(messages, budget, 0)

    head = messages[: len(messages) - len(tail)]
    return [*_admit_newest_first(head, budget - tail_tokens, 0), *tail]


def _admit_newest_first(messages: list[M], budget: int, running: int) -> list[M]:
    """Walk backward admitting messages; stop at the first one that overflows."""

    start = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        cost = estimate_message_tokens(messages[index])
        if running + cost > budget:
            break
        running += cost
        start = index
    return messages[start:]


def _group_turns(messages: list[M]) -> list[list[M]]:
    groups: list[list[M]] = []
    index = 0
    while index < len(messages):
        current = messages[index]
        following = messages[index + 1] if index + 1 < len(messages) else None
        if (
            following is not None
            and current.get("role") == "user"
            and following.get("role") == "assistant"
        ):
            groups.append([current, following])
            index += 2
        else:
            groups.append([current])
            index += 1
    return groups


def _smart_trim(messages: list[M], budget: int) -> list[M]:
    kept_groups: list[list[M]] = []
    running = 0
    for group in reversed(_group_turns(messages)):
        cost = estimate_total_tokens(group)
        if running + cost <= budget:
            kept_groups.append(group)
            running += cost
    return [message for group in reversed(kept_groups) for message in group]


def _exponential_decay(messages: list[M], budget: int) -> list[M]:
    count = len(messages)
    if not count:
        return []
    # Weight ties resolve toward the newer message.
    ranked = sorted(
        range(count),
        key=lambda index: (((index + 1) / count) ** 2, index),
        reverse=True,
    )
    admitted: list[int] = []
    running = 0
    for index in ranked:
        cost = estimate_message_tokens(messages[index])
        if running + cost <= budget:
            admitted.append(index)
            running += cost
    return [messages[index] for index in sorted(admitted)]
