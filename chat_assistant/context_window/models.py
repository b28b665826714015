"""Context window capacities for supported models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from chat_assistant.context_window.tokens import estimate_total_tokens

DEFAULT_MODEL = "llama3-8b-8192"


@dataclass(frozen=True, slots=True)
class ModelConfig:
    """Total capacity plus output and safety reservations for one model."""

    model_id: str
    name: str
    max_tokens: int
    max_output_tokens: int
    reserve_tokens: int

    @property
    def effective_budget(self) -> int:
        return self.max_tokens - self.reserve_tokens - self.max_output_tokens


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "llama3-8b-8192": ModelConfig(
        model_id="llama3-8b-8192",
        name="Llama 3 8B",
        max_tokens=8192,
        max_output_tokens=2048,
        reserve_tokens=500,
    ),
    "llama3-70b-8192": ModelConfig(
        model_id="llama3-70b-8192",
        name="Llama 3 70B",
        max_tokens=8192,
        max_output_tokens=2048,
        reserve_tokens=500,
    ),
    "mixtral-8x7b-32768": ModelConfig(
        model_id="mixtral-8x7b-32768",
        name="Mixtral 8x7B",
        max_tokens=32768,
        max_output_tokens=4096,
        reserve_tokens=1000,
    ),
    "gemma-7b-it": ModelConfig(
        model_id="gemma-7b-it",
        name="Gemma 7B",
        max_tokens=8192,
        max_output_tokens=2048,
        reserve_tokens=500,
    ),
}


def get_model_config(model: str | None) -> ModelConfig:
    """Return the configuration for ``model``, falling back to the default model."""

    return MODEL_CONFIGS.get(model or DEFAULT_MODEL, MODEL_CONFIGS[DEFAULT_MODEL])


def needs_trimming(messages: Iterable[Mapping[str, Any]], model: str = DEFAULT_MODEL) -> bool:
    """Return True when the estimated history exceeds the model budget."""

    return estimate_total_tokens(messages) > get_model_config(model).effective_budget
