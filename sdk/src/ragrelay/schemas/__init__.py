"""Public schema exports for ragrelay."""

from ragrelay.schemas.rag_chat import (
    ErrorEvent,
    FinalResponsePayload,
    Message,
    MessagePart,
    MessageRole,
    RagQuery,
    SourceMetadata,
    SourcesEvent,
    StreamEvent,
    TemperaturePreset,
    TextDeltaEvent,
    TextPart,
    ToolInvocationRecord,
    ToolInvocationsEvent,
    ToolRequestPart,
    ToolResponsePart,
)

__all__ = [
    "ErrorEvent",
    "FinalResponsePayload",
    "Message",
    "MessagePart",
    "MessageRole",
    "RagQuery",
    "SourceMetadata",
    "SourcesEvent",
    "StreamEvent",
    "TemperaturePreset",
    "TextDeltaEvent",
    "TextPart",
    "ToolInvocationRecord",
    "ToolInvocationsEvent",
    "ToolRequestPart",
    "ToolResponsePart",
]
