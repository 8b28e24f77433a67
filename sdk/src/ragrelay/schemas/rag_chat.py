from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TemperaturePreset = Literal["precise", "normal", "creative"]
MessageRole = Literal["system", "user", "model", "tool"]

# Wire payloads use camelCase keys; Python code uses snake_case attributes.
_WIRE_CONFIG = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class TextPart(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolRequestPart(BaseModel):
    """A tool call issued by the model, correlated by ``ref``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tool_request"] = "tool_request"
    name: str
    ref: str | None = None
    input: Any = None


class ToolResponsePart(BaseModel):
    """The result of a tool call, correlated back to its request by ``ref``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tool_response"] = "tool_response"
    ref: str | None = None
    name: str | None = None
    output: Any = None
    error: str | None = None


MessagePart = Annotated[
    TextPart | ToolRequestPart | ToolResponsePart,
    Field(discriminator="type"),
]


class Message(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    role: MessageRole
    content: list[MessagePart] = Field(default_factory=list)

    @classmethod
    def from_text(cls, role: MessageRole, text: str) -> Message:
        return cls(role=role, content=[TextPart(text=text)])

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


class RagQuery(BaseModel):
    """An incoming question plus everything needed to answer it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str = Field(..., min_length=1)
    session_id: str | None = None
    model_id: str | None = None
    temperature_preset: TemperaturePreset = "normal"
    max_tokens: int | None = Field(default=None, ge=1)
    tool_names: frozenset[str] = Field(default_factory=frozenset)
    history: tuple[Message, ...] = ()


class SourceMetadata(BaseModel):
    model_config = _WIRE_CONFIG

    document_id: str
    ordinal: int = Field(..., ge=0)
    source_file_name: str
    page_number: int | None = Field(default=None, ge=0)


class ToolInvocationRecord(BaseModel):
    model_config = _WIRE_CONFIG

    name: str
    input: Any = None
    output: Any = None
    error: str | None = None


class SourcesEvent(BaseModel):
    """Emitted once per run with the citation metadata of the selected passages."""

    model_config = _WIRE_CONFIG

    event: Literal["sources"] = "sources"
    sources: list[SourceMetadata]


class TextDeltaEvent(BaseModel):
    """Emitted for every piece of generated text, in generation order."""

    model_config = _WIRE_CONFIG

    event: Literal["chunk"] = "chunk"
    text: str


class ToolInvocationsEvent(BaseModel):
    """Emitted after tool calls have been reconciled."""

    model_config = _WIRE_CONFIG

    event: Literal["tool_invocations"] = "tool_invocations"
    invocations: list[ToolInvocationRecord]


class ErrorEvent(BaseModel):
    """Emitted for non-fatal warnings and for pipeline failures."""

    model_config = _WIRE_CONFIG

    event: Literal["error"] = "error"
    error: str


StreamEvent = Annotated[
    SourcesEvent | TextDeltaEvent | ToolInvocationsEvent | ErrorEvent,
    Field(discriminator="event"),
]


class FinalResponsePayload(BaseModel):
    model_config = _WIRE_CONFIG

    response: str
    tool_invocations: list[ToolInvocationRecord] = Field(default_factory=list)
    session_id: str = ""
