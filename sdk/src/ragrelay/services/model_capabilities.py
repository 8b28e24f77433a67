from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from ragrelay.schemas.rag_chat import TemperaturePreset

MaxTokensParam = Literal["max_tokens", "max_completion_tokens"]

TEMPERATURE_PRESETS: dict[TemperaturePreset, float] = {
    "precise": 0.2,
    "normal": 0.7,
    "creative": 0.9,
}


@dataclass(frozen=True)
class ModelCapabilities:
    supports_temperature: bool = True
    max_tokens_param: MaxTokensParam = "max_tokens"
    history_token_limit: int = 800_000


DEFAULT_CAPABILITIES = ModelCapabilities()

_REASONING_FAMILY = ModelCapabilities(
    supports_temperature=False,
    max_tokens_param="max_completion_tokens",
    history_token_limit=120_000,
)

# Keys are matched as prefixes of the normalized model id; the longest wins, so
# "gpt-4.1-mini-2025-04-14" resolves to "gpt-4.1-mini" rather than "gpt-4.1".
_CAPABILITY_TABLE: dict[str, ModelCapabilities] = {
    "gpt-4.1": ModelCapabilities(history_token_limit=800_000),
    "gpt-4.1-mini": ModelCapabilities(history_token_limit=120_000),
    "gpt-4.1-nano": ModelCapabilities(history_token_limit=120_000),
    "gpt-4o": ModelCapabilities(history_token_limit=100_000),
    "gpt-5": ModelCapabilities(
        supports_temperature=False,
        max_tokens_param="max_completion_tokens",
        history_token_limit=300_000,
    ),
    "o3": _REASONING_FAMILY,
    "o3-mini": _REASONING_FAMILY,
    "o4-mini": _REASONING_FAMILY,
}


def _normalize_model_id(model_id: str) -> str:
    normalized = model_id.strip().lower()
    # Accept provider-qualified ids such as "openai/o3".
    if "/" in normalized:
        normalized = normalized.rsplit("/", 1)[1]
    return normalized


def lookup_capabilities(model_id: str | None) -> ModelCapabilities:
    """Resolve a model's capability profile by longest-prefix match."""
    if not model_id:
        return DEFAULT_CAPABILITIES
    normalized = _normalize_model_id(model_id)
    best_key = ""
    for key in _CAPABILITY_TABLE:
        if normalized.startswith(key) and len(key) > len(best_key):
            best_key = key
    if not best_key:
        return DEFAULT_CAPABILITIES
    return _CAPABILITY_TABLE[best_key]


def build_generation_config(
    model_id: str | None,
    *,
    temperature_preset: TemperaturePreset = "normal",
    max_tokens: int | None = None,
) -> dict[str, Any]:
    capabilities = lookup_capabilities(model_id)
    config: dict[str, Any] = {}
    if capabilities.supports_temperature:
        config["temperature"] = TEMPERATURE_PRESETS[temperature_preset]
    if max_tokens is not None:
        config[capabilities.max_tokens_param] = max_tokens
    return config
