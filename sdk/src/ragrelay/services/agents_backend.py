from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any, Literal

from agents import Agent, ItemHelpers, Runner, function_tool
from agents.model_settings import ModelSettings

from ragrelay.schemas.rag_chat import Message, TextPart, ToolRequestPart, ToolResponsePart
from ragrelay.services.generation import FinalResult, GenerationChunk, GenerationStream
from ragrelay.services.tool_registry import ToolRegistry

OpenAIApi = Literal["chat_completions", "responses"]

_TEXT_DELTA_EVENT = "response.output_text.delta"
_DEFAULT_MAX_TURNS = 10


def _parse_arguments(arguments: Any) -> Any:
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return arguments


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _request_part(item: Any) -> ToolRequestPart:
    raw = item.raw_item
    return ToolRequestPart(
        name=str(_field(raw, "name") or "unknown"),
        ref=_field(raw, "call_id") or _field(raw, "id"),
        input=_parse_arguments(_field(raw, "arguments")),
    )


def _response_part(item: Any) -> ToolResponsePart:
    return ToolResponsePart(ref=_field(item.raw_item, "call_id"), output=item.output)


def _chunk_from_event(event: Any) -> GenerationChunk | None:
    if event.type == "raw_response_event":
        data = event.data
        if getattr(data, "type", None) == _TEXT_DELTA_EVENT and data.delta:
            return GenerationChunk(text=data.delta)
        return None
    if event.type == "run_item_stream_event":
        if event.item.type == "tool_call_item":
            return GenerationChunk(tool_requests=(_request_part(event.item),))
        if event.item.type == "tool_call_output_item":
            return GenerationChunk(tool_responses=(_response_part(event.item),))
    return None


def _transcript(items: Sequence[Any]) -> tuple[Message, ...]:
    messages: list[Message] = []
    for item in items:
        if item.type == "tool_call_item":
            messages.append(Message(role="model", content=[_request_part(item)]))
        elif item.type == "tool_call_output_item":
            messages.append(Message(role="tool", content=[_response_part(item)]))
        elif item.type == "message_output_item":
            text = ItemHelpers.text_message_output(item)
            messages.append(Message(role="model", content=[TextPart(text=text)]))
    return tuple(messages)


def _agent_input(messages: Sequence[Message]) -> tuple[str | None, list[dict[str, str]]]:
    instructions: list[str] = []
    items: list[dict[str, str]] = []
    for message in messages:
        text = message.text
        if message.role == "system":
            instructions.append(text)
            continue
        if not text:
            continue
        role = "user" if message.role == "user" else "assistant"
        items.append({"role": role, "content": text})
    return ("\n\n".join(instructions) or None), items


class AgentsGenerationBackend:
    """Streaming generation backend built on the OpenAI Agents SDK."""

    def __init__(
        self,
        *,
        tool_registry: ToolRegistry | None = None,
        openai_api: OpenAIApi = "responses",
        max_turns: int = _DEFAULT_MAX_TURNS,
        agent_name: str = "ragrelay_assistant",
    ) -> None:
        self._tool_registry = tool_registry or ToolRegistry()
        self._openai_api = openai_api
        self._max_turns = max_turns
        self._agent_name = agent_name

    def _model_settings(self, config: Mapping[str, Any]) -> ModelSettings:
        kwargs: dict[str, Any] = {}
        extra_args: dict[str, Any] = {}
        for key, value in config.items():
            if key == "temperature":
                kwargs["temperature"] = value
            elif key == "max_tokens":
                kwargs["max_tokens"] = value
            elif key == "max_completion_tokens" and self._openai_api == "responses":
                # The Responses API has a single output cap; the SDK maps max_tokens onto it.
                kwargs["max_tokens"] = value
            else:
                extra_args[key] = value
        if extra_args:
            kwargs["extra_args"] = extra_args
        return ModelSettings(**kwargs)

    def _tools(self, names: Sequence[str]) -> list[Any]:
        tools: list[Any] = []
        for name in names:
            spec = self._tool_registry.get(name)
            tools.append(
                function_tool(
                    spec.handler,
                    name_override=spec.name,
                    description_override=spec.description,
                )
            )
        return tools

    def generate_stream(
        self,
        *,
        model_id: str,
        messages: Sequence[Message],
        tools: Sequence[str],
        config: Mapping[str, Any],
    ) -> GenerationStream:
        instructions, input_items = _agent_input(messages)
        agent: Agent = Agent(
            name=self._agent_name,
            instructions=instructions,
            model=model_id,
            tools=self._tools(tools),
            model_settings=self._model_settings(config),
        )
        streamed = Runner.run_streamed(agent, input=input_items, max_turns=self._max_turns)
        final: asyncio.Future[FinalResult] = asyncio.get_running_loop().create_future()

        def _stop_run(future: asyncio.Future[FinalResult]) -> None:
            # Discarding the final result, or closing the chunks early, stops the run.
            if future.cancelled():
                streamed.cancel()

        final.add_done_callback(_stop_run)
        return GenerationStream(chunks=self._chunks(streamed, final), final_result=final)

    async def _chunks(
        self, streamed: Any, final: asyncio.Future[FinalResult]
    ) -> AsyncIterator[GenerationChunk]:
        completed = False
        try:
            async for event in streamed.stream_events():
                chunk = _chunk_from_event(event)
                if chunk is not None:
                    yield chunk
            completed = True
        finally:
            if not final.done():
                if completed:
                    output = streamed.final_output
                    final.set_result(
                        FinalResult(
                            text=str(output).strip() if output else "",
                            messages=_transcript(streamed.new_items),
                        )
                    )
                else:
                    final.cancel()
