from __future__ import annotations

import asyncio
import logging
import os

from ragrelay.retrieval.query_retriever import QueryRetriever
from ragrelay.retrieval.reranker_selector import RerankerSelector
from ragrelay.schemas.rag_chat import ErrorEvent, RagQuery, SourcesEvent
from ragrelay.services.citation_enricher import enrich_passages
from ragrelay.services.citation_validator import CitationValidator
from ragrelay.services.event_emitter import EventEmitter, EventSink
from ragrelay.services.fallback_controller import FallbackController, RunContext
from ragrelay.services.generation import GenerationOrchestrator, GenerationResult
from ragrelay.services.history_trimmer import HistoryTrimmer
from ragrelay.services.model_capabilities import build_generation_config
from ragrelay.services.prompt_assembler import PromptAssembler
from ragrelay.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

_DEFAULT_CHAT_MODEL = "gpt-4.1"


def _chat_model() -> str:
    return os.getenv("RAGRELAY_CHAT_MODEL", _DEFAULT_CHAT_MODEL)


class RagPipeline:
    """Retrieval -> rerank -> prompt -> streaming generation, wrapped in fallback."""

    def __init__(
        self,
        *,
        retriever: QueryRetriever,
        selector: RerankerSelector,
        assembler: PromptAssembler,
        generator: GenerationOrchestrator,
        history_trimmer: HistoryTrimmer | None = None,
        tool_registry: ToolRegistry | None = None,
        citation_validator: CitationValidator | None = None,
        default_model: str | None = None,
    ) -> None:
        self._retriever = retriever
        self._selector = selector
        self._assembler = assembler
        self._generator = generator
        self._history_trimmer = history_trimmer or HistoryTrimmer()
        self._tool_registry = tool_registry or ToolRegistry()
        self._citation_validator = citation_validator or CitationValidator()
        self._default_model = default_model
        self._fallback = FallbackController(
            generator=generator,
            assembler=assembler,
            tool_registry=self._tool_registry,
        )

    async def run(
        self,
        query: RagQuery,
        *,
        event_sink: EventSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Answer ``query``, pushing stream events to ``event_sink`` as they happen.

        Always returns a result; failures are reported as ``error`` events and,
        if the secondary attempt also fails, as the response text itself.
        """
        emitter = EventEmitter(event_sink, cancel_event=cancel_event)
        model_id = query.model_id or self._default_model or _chat_model()
        context = RunContext(
            query=query,
            model_id=model_id,
            config=build_generation_config(
                model_id,
                temperature_preset=query.temperature_preset,
                max_tokens=query.max_tokens,
            ),
        )
        try:
            return await self._fallback.run(context, emitter, primary=self._run_primary)
        finally:
            emitter.close()

    async def _resolve_tools(self, query: RagQuery, emitter: EventEmitter) -> list[str]:
        if not query.tool_names:
            return []
        resolution = self._tool_registry.resolve(query.tool_names)
        for error in resolution.misconfigured:
            logger.warning("tool disabled for run tool=%s", error.tool_name)
            await emitter.emit(ErrorEvent(error=error.message))
        return resolution.enabled

    async def _run_primary(self, context: RunContext, emitter: EventEmitter) -> GenerationResult:
        query = context.query
        tool_names = await self._resolve_tools(query, emitter)

        emitter.raise_if_cancelled()
        candidates = await self._retriever.retrieve(query.text, session_id=query.session_id)
        selected = await self._selector.select(
            query.text, candidates, should_cancel=lambda: emitter.cancelled
        )
        context.passages = enrich_passages(selected)
        sources = [passage.source for passage in context.passages]
        await emitter.emit(SourcesEvent(sources=sources))
        logger.info(
            "passages selected session_id=%s candidates=%s selected=%s",
            context.session_id,
            len(candidates),
            len(sources),
        )

        history = self._history_trimmer.trim_for_model(query.history, context.model_id)
        emitter.raise_if_cancelled()
        messages = await self._assembler.build(
            query_text=query.text,
            history=history,
            passages=context.passages,
        )
        result = await self._generator.generate(
            emitter=emitter,
            model_id=context.model_id,
            messages=messages,
            config=context.config,
            tool_names=tool_names,
            session_id=context.session_id,
        )

        validation = self._citation_validator.validate(result.accumulated_text, sources)
        if not validation.ok:
            logger.warning(
                "unresolvable citation markers session_id=%s issues=%s",
                context.session_id,
                validation.issues,
            )
        return result
