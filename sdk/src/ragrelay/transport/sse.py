from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any, cast

from ragrelay.errors import SerializationError
from ragrelay.schemas.rag_chat import ErrorEvent, RagQuery, StreamEvent
from ragrelay.services.fallback_chain import SyncStrategy, first_success_sync
from ragrelay.services.fallback_controller import TERMINAL_ERROR_PREFIX
from ragrelay.services.generation import GenerationResult
from ragrelay.services.rag_pipeline import RagPipeline

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

FINAL_RESPONSE_EVENT = "final_response"
FORMAT_FALLBACK_RESPONSE = "Response could not be properly formatted. Please try again."

_RESPONSE_FIELD_RE = re.compile(r'"response"\s*:\s*"((?:[^"\\]|\\.)+)"', re.DOTALL)
_STREAM_EVENTS_DONE = object()


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(payload: str, *, strict: bool = True) -> Any:
    try:
        return json.loads(payload, strict=strict)
    except (json.JSONDecodeError, TypeError) as exc:
        raise SerializationError(f"payload is not valid JSON: {exc}") from exc


def _unescape(payload: str) -> str:
    text = (
        payload.replace('\\"', '"')
        .replace("\\n", "\n")
        .replace("\\r", "\r")
        .replace("\\t", "\t")
        .replace("\\\\", "\\")
    )
    return text.rstrip("\\")


def _decode_json_string(value: str) -> str:
    try:
        return cast(str, json.loads(f'"{value}"', strict=False))
    except json.JSONDecodeError:
        return value


def _final_payload(response: str) -> dict[str, Any]:
    return {"response": response, "toolInvocations": [], "sessionId": ""}


class TransportEncoder:
    """Serializes events into SSE frames whose data line is always valid JSON."""

    def _recovery_chain(self, event_name: str, payload: str) -> list[SyncStrategy[str]]:
        def unescaped() -> str:
            return _dumps(_loads(_unescape(payload), strict=False))

        def extracted_response() -> str:
            match = _RESPONSE_FIELD_RE.search(payload)
            if match is None:
                raise SerializationError("no response field found")
            return _dumps(_final_payload(_decode_json_string(match.group(1))))

        def generic() -> str:
            return _dumps(_final_payload(FORMAT_FALLBACK_RESPONSE))

        def invalid_event() -> str:
            return _dumps({"error": f"Invalid JSON data for {event_name} event"})

        strategies = [SyncStrategy(name="unescape", run=unescaped)]
        if event_name == FINAL_RESPONSE_EVENT:
            strategies.append(SyncStrategy(name="extract_response", run=extracted_response))
            strategies.append(SyncStrategy(name="generic", run=generic))
        else:
            strategies.append(SyncStrategy(name="invalid_event", run=invalid_event))
        return strategies

    def validate(self, event_name: str, payload: str) -> str:
        """Return ``payload`` re-serialized as single-line JSON, recovering if malformed."""
        try:
            return _dumps(_loads(payload))
        except SerializationError as exc:
            logger.warning("recovering malformed payload event=%s error=%s", event_name, exc)
        return first_success_sync(
            self._recovery_chain(event_name, payload), label="json recovery"
        )

    def frame(self, event_name: str, payload: str) -> str:
        return f"event: {event_name}\ndata: {self.validate(event_name, payload)}\n\n"

    def encode_event(self, event: StreamEvent) -> str:
        body = event.model_dump(mode="json", by_alias=True, exclude={"event"})
        return self.frame(event.event, _dumps(body))

    def encode_result(self, result: GenerationResult) -> str:
        body = result.to_payload().model_dump(mode="json", by_alias=True)
        return self.frame(FINAL_RESPONSE_EVENT, _dumps(body))


async def sse_stream(
    pipeline: RagPipeline,
    query: RagQuery,
    *,
    cancel_event: asyncio.Event | None = None,
    encoder: TransportEncoder | None = None,
) -> AsyncIterator[str]:
    """Run ``pipeline`` and yield SSE frames, ending with ``final_response``."""
    encoder = encoder or TransportEncoder()
    event_queue: asyncio.Queue[object] = asyncio.Queue()

    async def on_stream_event(event: StreamEvent) -> None:
        await event_queue.put(event)

    async def run_with_live_events() -> GenerationResult:
        try:
            return await pipeline.run(query, event_sink=on_stream_event, cancel_event=cancel_event)
        finally:
            await event_queue.put(_STREAM_EVENTS_DONE)

    run_task: asyncio.Task[GenerationResult] = asyncio.create_task(run_with_live_events())
    try:
        while True:
            queued_item = await event_queue.get()
            if queued_item is _STREAM_EVENTS_DONE:
                break
            yield encoder.encode_event(cast(StreamEvent, queued_item))

        if cancel_event is not None and cancel_event.is_set():
            return

        try:
            result = await run_task
        except Exception as exc:
            logger.exception("rag pipeline escaped its error boundary")
            message = str(exc) or type(exc).__name__
            yield encoder.encode_event(ErrorEvent(error=f"Service error: {message}"))
            result = GenerationResult(
                accumulated_text=f"{TERMINAL_ERROR_PREFIX} {message}".strip(),
                session_id=query.session_id or "",
            )
        yield encoder.encode_result(result)
    finally:
        if not run_task.done():
            run_task.cancel()
            with suppress(asyncio.CancelledError):
                await run_task
