from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from ragrelay.errors import GenerationBackendError, RunCancelledError
from ragrelay.schemas.rag_chat import (
    FinalResponsePayload,
    Message,
    TextDeltaEvent,
    ToolInvocationRecord,
    ToolInvocationsEvent,
    ToolRequestPart,
    ToolResponsePart,
)
from ragrelay.services.event_emitter import EventEmitter

logger = logging.getLogger(__name__)

UNMATCHED_TOOL_NAME = "unknown_tool_ref_not_found"


@dataclass(frozen=True)
class GenerationChunk:
    text: str = ""
    tool_requests: tuple[ToolRequestPart, ...] = ()
    tool_responses: tuple[ToolResponsePart, ...] = ()


@dataclass(frozen=True)
class FinalResult:
    text: str = ""
    messages: tuple[Message, ...] = ()


@dataclass(frozen=True)
class GenerationStream:
    """A lazy, single-pass chunk sequence plus the future for the final result."""

    chunks: AsyncIterator[GenerationChunk]
    final_result: Awaitable[FinalResult]


class GenerationBackend(Protocol):
    def generate_stream(
        self,
        *,
        model_id: str,
        messages: Sequence[Message],
        tools: Sequence[str],
        config: Mapping[str, Any],
    ) -> GenerationStream: ...


@dataclass(frozen=True)
class GenerationResult:
    accumulated_text: str
    tool_invocations: list[ToolInvocationRecord] = field(default_factory=list)
    session_id: str = ""

    def to_payload(self) -> FinalResponsePayload:
        return FinalResponsePayload(
            response=self.accumulated_text,
            tool_invocations=list(self.tool_invocations),
            session_id=self.session_id,
        )


class GenerationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ToolCorrelationTable:
    """Pending tool requests keyed by correlation ref, scoped to one generation call.

    Requests and responses without a ref are paired in arrival order.
    """

    def __init__(self) -> None:
        self._pending: dict[str, ToolRequestPart] = {}
        self._unreferenced: deque[ToolRequestPart] = deque()
        self._resolved: set[str] = set()
        self.records: list[ToolInvocationRecord] = []

    def __len__(self) -> int:
        return len(self._pending) + len(self._unreferenced)

    def add_request(self, request: ToolRequestPart) -> None:
        ref = request.ref
        if ref is None:
            self._unreferenced.append(request)
            return
        # Transcript replays of requests already seen in the stream.
        if ref in self._resolved or ref in self._pending:
            return
        self._pending[ref] = request

    def _take_request(self, ref: str | None) -> ToolRequestPart | None:
        if ref is not None:
            return self._pending.pop(ref, None)
        if self._unreferenced:
            return self._unreferenced.popleft()
        return None

    def resolve(self, response: ToolResponsePart) -> ToolInvocationRecord | None:
        ref = response.ref
        if ref is not None and ref in self._resolved:
            return None
        request = self._take_request(ref)
        if request is None:
            logger.warning("tool response without pending request ref=%s", ref)
            record = ToolInvocationRecord(
                name=UNMATCHED_TOOL_NAME,
                input=None,
                output=response.output,
                error=response.error,
            )
        else:
            record = ToolInvocationRecord(
                name=request.name,
                input=request.input,
                output=response.output,
                error=response.error,
            )
        if ref is not None:
            self._resolved.add(ref)
        self.records.append(record)
        return record

    def drain(self) -> list[ToolRequestPart]:
        """Remove and return requests that never received a response."""
        leaked = [*self._pending.values(), *self._unreferenced]
        self._pending.clear()
        self._unreferenced.clear()
        return leaked


def _discard(final_result: Awaitable[FinalResult]) -> None:
    if isinstance(final_result, asyncio.Future):
        final_result.cancel()
    elif inspect.iscoroutine(final_result):
        final_result.close()


class GenerationRun:
    """One streaming generation call: Idle -> Streaming -> Reconciling -> Done."""

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        emitter: EventEmitter,
        model_id: str,
        messages: Sequence[Message],
        tool_names: Sequence[str],
        config: Mapping[str, Any],
        session_id: str = "",
    ) -> None:
        self._backend = backend
        self._emitter = emitter
        self._model_id = model_id
        self._messages = list(messages)
        self._tool_names = list(tool_names)
        self._config = dict(config)
        self._session_id = session_id
        self._text_parts: list[str] = []
        self.state = GenerationState.IDLE
        self.table = ToolCorrelationTable()

    @property
    def accumulated_text(self) -> str:
        return "".join(self._text_parts)

    def _check_cancelled(self) -> None:
        if self._emitter.cancelled:
            self.state = GenerationState.CANCELLED
            raise RunCancelledError(partial_text=self.accumulated_text)

    async def _consume(self, chunk: GenerationChunk) -> None:
        if chunk.text:
            self._text_parts.append(chunk.text)
            await self._emitter.emit(TextDeltaEvent(text=chunk.text))
        for request in chunk.tool_requests:
            self.table.add_request(request)
        for response in chunk.tool_responses:
            self.table.resolve(response)

    async def _stream(self, stream: GenerationStream) -> None:
        iterator = aiter(stream.chunks)
        try:
            while True:
                self._check_cancelled()
                try:
                    chunk = await anext(iterator)
                except StopAsyncIteration:
                    return
                await self._consume(chunk)
        except BaseException:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()
            raise

    def _fold_transcript(self, final: FinalResult) -> None:
        for message in final.messages:
            for part in message.content:
                if isinstance(part, ToolRequestPart):
                    self.table.add_request(part)
                elif isinstance(part, ToolResponsePart):
                    self.table.resolve(part)

    async def execute(self) -> GenerationResult:
        self._check_cancelled()
        self.state = GenerationState.STREAMING
        try:
            stream = self._backend.generate_stream(
                model_id=self._model_id,
                messages=self._messages,
                tools=self._tool_names,
                config=self._config,
            )
        except Exception as exc:
            self.state = GenerationState.FAILED
            raise GenerationBackendError(f"Generation failed to start: {exc}") from exc

        try:
            await self._stream(stream)
        except RunCancelledError:
            _discard(stream.final_result)
            raise
        except Exception as exc:
            self.state = GenerationState.FAILED
            _discard(stream.final_result)
            raise GenerationBackendError(f"Generation stream failed: {exc}") from exc

        self.state = GenerationState.RECONCILING
        try:
            self._check_cancelled()
        except RunCancelledError:
            _discard(stream.final_result)
            raise
        try:
            final = await stream.final_result
        except Exception as exc:
            self.state = GenerationState.FAILED
            raise GenerationBackendError(f"Generation final result failed: {exc}") from exc

        self._fold_transcript(final)
        leaked = self.table.drain()
        if leaked:
            logger.warning(
                "tool requests without responses count=%s names=%s",
                len(leaked),
                [request.name for request in leaked],
            )

        if not self._text_parts and final.text:
            self._text_parts.append(final.text)
            await self._emitter.emit(TextDeltaEvent(text=final.text))

        records = list(self.table.records)
        if records:
            await self._emitter.emit(ToolInvocationsEvent(invocations=records))

        self.state = GenerationState.DONE
        return GenerationResult(
            accumulated_text=self.accumulated_text,
            tool_invocations=records,
            session_id=self._session_id,
        )


class GenerationOrchestrator:
    """Drives the streaming generation backend for a pipeline run."""

    def __init__(self, *, backend: GenerationBackend) -> None:
        self._backend = backend

    async def generate(
        self,
        *,
        emitter: EventEmitter,
        model_id: str,
        messages: Sequence[Message],
        config: Mapping[str, Any],
        tool_names: Sequence[str] = (),
        session_id: str = "",
    ) -> GenerationResult:
        run = GenerationRun(
            backend=self._backend,
            emitter=emitter,
            model_id=model_id,
            messages=messages,
            tool_names=tool_names,
            config=config,
            session_id=session_id,
        )
        return await run.execute()
