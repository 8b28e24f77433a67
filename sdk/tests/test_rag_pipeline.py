from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import pytest

from ragrelay.retrieval.query_retriever import QueryRetriever
from ragrelay.retrieval.reranker_selector import RerankerSelector
from ragrelay.retrieval.types import Passage
from ragrelay.schemas.rag_chat import (
    ErrorEvent,
    Message,
    RagQuery,
    SourcesEvent,
    StreamEvent,
    TextDeltaEvent,
)
from ragrelay.services.fallback_controller import TERMINAL_ERROR_PREFIX
from ragrelay.services.generation import (
    FinalResult,
    GenerationChunk,
    GenerationOrchestrator,
    GenerationStream,
)
from ragrelay.services.prompt_assembler import PromptAssembler, PromptTemplateProvider
from ragrelay.services.rag_pipeline import RagPipeline
from ragrelay.services.tool_registry import default_tool_registry


def _passages(count: int, *, session_id: str = "s1") -> list[Passage]:
    return [
        Passage(
            document_id=f"doc-{i}",
            chunk_ordinal=i,
            source_file_name=f"file-{i}.pdf",
            text=f"X is fact {i}",
            session_id=session_id,
        )
        for i in range(count)
    ]


class _FakeStore:
    def __init__(self, passages: list[Passage] | None = None, error: Exception | None = None) -> None:
        self.passages = passages or []
        self.error = error
        self.calls = 0

    async def search(self, query_text: str, k: int, session_filter: str | None = None) -> list[Passage]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.passages[:k]


class _FakeReranker:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def rerank(self, query_text: str, passages: list[Passage], k: int) -> list[Passage]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return passages[::-1][:k]


class _FakeBackend:
    """Replays one scripted outcome per call; an Exception entry makes that call fail."""

    def __init__(self, *outcomes: str | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def generate_stream(
        self,
        *,
        model_id: str,
        messages: Sequence[Message],
        tools: Sequence[str],
        config: Mapping[str, Any],
    ) -> GenerationStream:
        self.calls.append(
            {"model_id": model_id, "messages": list(messages), "tools": list(tools), "config": config}
        )
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"

        async def _chunks() -> AsyncIterator[GenerationChunk]:
            if isinstance(outcome, Exception):
                raise outcome
            for word in outcome.split(" "):
                yield GenerationChunk(text=word + " ")

        async def _final() -> FinalResult:
            return FinalResult(text=str(outcome))

        return GenerationStream(chunks=_chunks(), final_result=_final())


def _pipeline(
    *,
    store: _FakeStore,
    backend: _FakeBackend,
    reranker: _FakeReranker | None = None,
    template: PromptTemplateProvider | None = None,
) -> RagPipeline:
    return RagPipeline(
        retriever=QueryRetriever(store=store, candidate_count=20),
        selector=RerankerSelector(
            backends={"primary": reranker or _FakeReranker()},
            order=["primary"],
            final_count=5,
        ),
        assembler=PromptAssembler(template=template),
        generator=GenerationOrchestrator(backend=backend),
        tool_registry=default_tool_registry(),
        default_model="gpt-4.1",
    )


async def _run(
    pipeline: RagPipeline, query: RagQuery, cancel_event: asyncio.Event | None = None
) -> tuple[Any, list[StreamEvent]]:
    events: list[StreamEvent] = []

    async def _sink(event: StreamEvent) -> None:
        events.append(event)

    result = await pipeline.run(query, event_sink=_sink, cancel_event=cancel_event)
    return result, events


@pytest.mark.asyncio
async def test_small_candidate_set_skips_reranking_and_cites_all() -> None:
    reranker = _FakeReranker()
    backend = _FakeBackend("X is fact 0 [Source: file-0.pdf, Chunk: 0]")
    pipeline = _pipeline(store=_FakeStore(_passages(3)), backend=backend, reranker=reranker)

    result, events = await _run(pipeline, RagQuery(text="what is X", session_id="s1"))

    assert reranker.calls == 0
    sources_event = events[0]
    assert isinstance(sources_event, SourcesEvent)
    assert [s.ordinal for s in sources_event.sources] == [0, 1, 2]
    assert [s.source_file_name for s in sources_event.sources] == [
        "file-0.pdf",
        "file-1.pdf",
        "file-2.pdf",
    ]
    assert all(isinstance(e, TextDeltaEvent) for e in events[1:])
    assert result.accumulated_text.strip() == "X is fact 0 [Source: file-0.pdf, Chunk: 0]"
    assert result.session_id == "s1"


@pytest.mark.asyncio
async def test_zero_candidates_still_generates_an_answer() -> None:
    backend = _FakeBackend("I can't reliably answer.")
    pipeline = _pipeline(store=_FakeStore([]), backend=backend)

    result, events = await _run(pipeline, RagQuery(text="what is X", session_id="s1"))

    assert events[0] == SourcesEvent(sources=[])
    assert result.accumulated_text.strip() == "I can't reliably answer."
    [call] = backend.calls
    assert call["messages"][-1].text == "Query: what is X\nDocuments: No content available"


@pytest.mark.asyncio
async def test_prompt_carries_exactly_final_count_passages() -> None:
    backend = _FakeBackend("answer")
    pipeline = _pipeline(
        store=_FakeStore(_passages(8)),
        backend=backend,
        reranker=_FakeReranker(error=RuntimeError("reranker offline")),
    )

    _, events = await _run(pipeline, RagQuery(text="what is X", session_id="s1"))

    sources_event = events[0]
    assert isinstance(sources_event, SourcesEvent)
    assert [s.document_id for s in sources_event.sources] == [f"doc-{i}" for i in range(5)]
    assert not any(isinstance(e, ErrorEvent) for e in events)
    prompt_text = backend.calls[0]["messages"][-1].text
    assert prompt_text.count("X is fact") == 5


@pytest.mark.asyncio
async def test_history_and_generation_config_reach_the_backend() -> None:
    backend = _FakeBackend("answer")
    pipeline = _pipeline(store=_FakeStore(_passages(1)), backend=backend)
    query = RagQuery(
        text="and now?",
        session_id="s1",
        model_id="o4-mini",
        temperature_preset="creative",
        max_tokens=64,
        history=(Message.from_text("user", "hi"), Message.from_text("model", "hello")),
    )

    await _run(pipeline, query)

    [call] = backend.calls
    assert call["model_id"] == "o4-mini"
    assert call["config"] == {"max_completion_tokens": 64}
    assert [m.role for m in call["messages"]] == ["system", "user", "model", "user"]


@pytest.mark.asyncio
async def test_primary_failure_falls_back_to_reduced_run() -> None:
    backend = _FakeBackend(RuntimeError("model overloaded"), "fallback answer")
    pipeline = _pipeline(store=_FakeStore(_passages(2)), backend=backend)
    query = RagQuery(
        text="what is X",
        session_id="s1",
        history=(Message.from_text("user", "earlier"),),
    )

    result, events = await _run(pipeline, query)

    assert result.accumulated_text.strip() == "fallback answer"
    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert len(errors) == 1
    assert errors[0].error.startswith("Service error:")
    assert "model overloaded" in errors[0].error
    secondary = backend.calls[1]
    assert secondary["tools"] == []
    assert [m.role for m in secondary["messages"]] == ["system", "user"]
    assert secondary["messages"][1].text == (
        "Query: what is X\nDocuments: X is fact 0\n\nX is fact 1"
    )


@pytest.mark.asyncio
async def test_double_failure_returns_terminal_error_text() -> None:
    backend = _FakeBackend(RuntimeError("first"), RuntimeError("second"))
    pipeline = _pipeline(store=_FakeStore(_passages(2)), backend=backend)

    result, events = await _run(pipeline, RagQuery(text="what is X", session_id="s1"))

    assert result.accumulated_text.startswith(TERMINAL_ERROR_PREFIX)
    assert "second" in result.accumulated_text
    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert [e.error.split(":")[0] for e in errors] == ["Service error", "Service fallback error"]
    assert len(backend.calls) == 2
    assert backend.calls[1]["tools"] == []


@pytest.mark.asyncio
async def test_retrieval_failure_falls_back_without_passages() -> None:
    backend = _FakeBackend("answer from instructions")
    pipeline = _pipeline(store=_FakeStore(error=ConnectionError("index offline")), backend=backend)

    result, events = await _run(pipeline, RagQuery(text="what is X", session_id="s1"))

    assert not any(isinstance(e, SourcesEvent) for e in events)
    assert isinstance(events[0], ErrorEvent)
    assert "index offline" in events[0].error
    assert result.accumulated_text.strip() == "answer from instructions"
    assert backend.calls[0]["messages"][-1].text.endswith("Documents: No content available")


@pytest.mark.asyncio
async def test_misconfigured_tool_is_reported_and_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TAVILY_API_KEY", raising=False)
    backend = _FakeBackend("answer")
    pipeline = _pipeline(store=_FakeStore(_passages(1)), backend=backend)

    result, events = await _run(
        pipeline, RagQuery(text="news?", session_id="s1", tool_names=frozenset({"tavily_search"}))
    )

    assert events[0] == ErrorEvent(
        error=(
            "The Tavily Search tool is not properly configured. Please make sure "
            "TAVILY_API_KEY is set in your environment variables."
        )
    )
    assert isinstance(events[1], SourcesEvent)
    assert backend.calls[0]["tools"] == []
    assert result.accumulated_text.strip() == "answer"


@pytest.mark.asyncio
async def test_configured_tool_names_pass_through(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TAVILY_API_KEY", "tvly-test")
    backend = _FakeBackend("answer")
    pipeline = _pipeline(store=_FakeStore(_passages(1)), backend=backend)

    await _run(
        pipeline,
        RagQuery(text="news?", session_id="s1", tool_names=frozenset({"tavily_search", "nope"})),
    )

    assert backend.calls[0]["tools"] == ["tavily_search"]


@pytest.mark.asyncio
async def test_pre_cancelled_run_calls_no_collaborator() -> None:
    cancel_event = asyncio.Event()
    cancel_event.set()
    store = _FakeStore(_passages(8))
    reranker = _FakeReranker()
    backend = _FakeBackend("answer")
    pipeline = _pipeline(store=store, backend=backend, reranker=reranker)

    result, events = await _run(
        pipeline, RagQuery(text="what is X", session_id="s1"), cancel_event
    )

    assert events == []
    assert result.accumulated_text == ""
    assert result.session_id == "s1"
    assert store.calls == 0
    assert reranker.calls == 0
    assert backend.calls == []


@pytest.mark.asyncio
async def test_cancel_after_retrieval_skips_rerankers_and_generation() -> None:
    cancel_event = asyncio.Event()

    class _CancellingStore(_FakeStore):
        async def search(
            self, query_text: str, k: int, session_filter: str | None = None
        ) -> list[Passage]:
            passages = await super().search(query_text, k, session_filter)
            cancel_event.set()
            return passages

    store = _CancellingStore(_passages(8))
    reranker = _FakeReranker()
    backend = _FakeBackend("answer")
    pipeline = _pipeline(store=store, backend=backend, reranker=reranker)

    result, events = await _run(
        pipeline, RagQuery(text="what is X", session_id="s1"), cancel_event
    )

    assert store.calls == 1
    assert reranker.calls == 0
    assert backend.calls == []
    assert events == []
    assert result.accumulated_text == ""
