from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ragrelay.errors import RunCancelledError, ToolMisconfiguredError
from ragrelay.schemas.rag_chat import ErrorEvent, RagQuery
from ragrelay.services.citation_enricher import EnrichedPassage
from ragrelay.services.event_emitter import EventEmitter
from ragrelay.services.generation import GenerationOrchestrator, GenerationResult
from ragrelay.services.prompt_assembler import PromptAssembler, synthesize_prompt
from ragrelay.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

TERMINAL_ERROR_PREFIX = "Error: RAG service encountered an issue."


@dataclass
class RunContext:
    """Mutable state shared by the primary and secondary attempts of one run."""

    query: RagQuery
    model_id: str
    config: dict[str, Any]
    passages: list[EnrichedPassage] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.query.session_id or ""


PrimaryRun = Callable[[RunContext, EventEmitter], Awaitable[GenerationResult]]


def describe_failure(exc: BaseException, tool_registry: ToolRegistry | None = None) -> str:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, ToolMisconfiguredError):
            return current.message
        current = current.__cause__
    message = str(exc) or type(exc).__name__
    if tool_registry is not None:
        tool_message = tool_registry.describe_failure(message)
        if tool_message:
            return tool_message
    return message


class FallbackController:
    """Runs the primary path and, on failure, exactly one reduced secondary path.

    The secondary attempt has no history, no tools and a synthesized prompt
    over whatever passages the primary attempt had already selected. The
    controller never raises; a double failure becomes an error response text.
    """

    def __init__(
        self,
        *,
        generator: GenerationOrchestrator,
        assembler: PromptAssembler,
        tool_registry: ToolRegistry | None = None,
    ) -> None:
        self._generator = generator
        self._assembler = assembler
        self._tool_registry = tool_registry

    def _cancelled(self, context: RunContext, exc: RunCancelledError) -> GenerationResult:
        logger.info("rag run cancelled session_id=%s", context.session_id)
        return GenerationResult(accumulated_text=exc.partial_text, session_id=context.session_id)

    async def _secondary(self, context: RunContext, emitter: EventEmitter) -> GenerationResult:
        messages = self._assembler.assemble(
            history=[],
            template_messages=synthesize_prompt(context.query.text, context.passages),
        )
        return await self._generator.generate(
            emitter=emitter,
            model_id=context.model_id,
            messages=messages,
            config=context.config,
            tool_names=(),
            session_id=context.session_id,
        )

    async def run(
        self, context: RunContext, emitter: EventEmitter, *, primary: PrimaryRun
    ) -> GenerationResult:
        try:
            return await primary(context, emitter)
        except RunCancelledError as exc:
            return self._cancelled(context, exc)
        except Exception as exc:
            logger.exception("primary rag run failed session_id=%s", context.session_id)
            await emitter.emit(
                ErrorEvent(error=f"Service error: {describe_failure(exc, self._tool_registry)}")
            )

        try:
            return await self._secondary(context, emitter)
        except RunCancelledError as exc:
            return self._cancelled(context, exc)
        except Exception as exc:
            logger.exception("fallback rag run failed session_id=%s", context.session_id)
            message = describe_failure(exc, self._tool_registry)
            await emitter.emit(ErrorEvent(error=f"Service fallback error: {message}"))
            return GenerationResult(
                accumulated_text=f"{TERMINAL_ERROR_PREFIX} {message}".strip(),
                session_id=context.session_id,
            )
