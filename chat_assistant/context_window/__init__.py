"""Context window budgeting package."""

from chat_assistant.context_window.budgeter import (
    BudgetDecision,
    TrimOptions,
    TrimStrategy,
    trim_messages_for_context,
)
from chat_assistant.context_window.models import (
    DEFAULT_MODEL,
    MODEL_CONFIGS,
    ModelConfig,
    get_model_config,
    needs_trimming,
)
from chat_assistant.context_window.tokens import (
    estimate_message_tokens,
    estimate_tokens,
    estimate_total_tokens,
)

__all__ = [
    "DEFAULT_MODEL",
    "MODEL_CONFIGS",
    "BudgetDecision",
    "ModelConfig",
    "TrimOptions",
    "TrimStrategy",
    "estimate_message_tokens",
    "estimate_tokens",
    "estimate_total_tokens",
    "get_model_config",
    "needs_trimming",
    "trim_messages_for_context",
]
