from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StrategyFailure:
    strategy: str
    error: str


class RagRelayError(RuntimeError):
    """Base error for the ragrelay package."""


class RagRelayConfigurationError(RagRelayError):
    """Raised when the pipeline is misconfigured (e.g., invalid env value)."""


class RetrievalUnavailableError(RagRelayError):
    """Raised when the retrieval store cannot be queried."""


class FallbackChainExhaustedError(RagRelayError):
    """Raised when every strategy of an ordered fallback chain failed."""

    def __init__(self, message: str, failures: list[StrategyFailure] | None = None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class AllRerankersFailedError(FallbackChainExhaustedError):
    """Raised when no configured reranker backend produced a selection."""


class PromptTemplateUnavailableError(FallbackChainExhaustedError):
    """Raised when the prompt template is missing or failed to render."""


class GenerationBackendError(RagRelayError):
    """Raised when the streaming call or its final result failed."""


class ToolMisconfiguredError(RagRelayError):
    """Raised when a requested tool lacks required credentials."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


class SerializationError(RagRelayError):
    """Raised when a wire payload is not well-formed JSON."""


class RunCancelledError(RagRelayError):
    """Raised when the caller cancelled the pipeline run."""

    def __init__(self, message: str = "run cancelled", *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text
