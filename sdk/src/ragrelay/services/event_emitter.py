from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ragrelay.errors import RunCancelledError
from ragrelay.schemas.rag_chat import StreamEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], Awaitable[None]]


class EventEmitter:
    """Pushes stream events to a caller-supplied sink as soon as they are produced.

    Nothing is buffered or reordered. Once the caller's cancellation signal is
    set or the emitter is closed, further events are dropped.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._sink = sink
        self._cancel_event = cancel_event
        self._closed = False
        self.emitted_count = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def raise_if_cancelled(self, partial_text: str = "") -> None:
        if self.cancelled:
            raise RunCancelledError(partial_text=partial_text)

    async def emit(self, event: StreamEvent) -> bool:
        if self._closed or self.cancelled:
            logger.debug("dropping event after close event=%s", event.event)
            return False
        if self._sink is None:
            return False
        try:
            await self._sink(event)
        except Exception:
            # A broken sink cannot receive anything further, including error events.
            logger.exception("event sink failed; closing emitter event=%s", event.event)
            self._closed = True
            return False
        self.emitted_count += 1
        return True
