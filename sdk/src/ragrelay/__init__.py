"""ragrelay: grounded answer streaming over a per-session passage store."""

from .client import PipelineSettings, RagRelay
from .errors import (
    AllRerankersFailedError,
    FallbackChainExhaustedError,
    GenerationBackendError,
    PromptTemplateUnavailableError,
    RagRelayConfigurationError,
    RagRelayError,
    RetrievalUnavailableError,
    RunCancelledError,
    SerializationError,
    ToolMisconfiguredError,
)
from .retrieval.types import Passage
from .services.generation import GenerationResult

__all__ = [
    "AllRerankersFailedError",
    "FallbackChainExhaustedError",
    "GenerationBackendError",
    "GenerationResult",
    "Passage",
    "PipelineSettings",
    "PromptTemplateUnavailableError",
    "RagRelay",
    "RagRelayConfigurationError",
    "RagRelayError",
    "RetrievalUnavailableError",
    "RunCancelledError",
    "SerializationError",
    "ToolMisconfiguredError",
]
