from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import pytest

import ragrelay.client as client_module
from ragrelay import PipelineSettings, RagRelay, RagRelayConfigurationError
from ragrelay.retrieval.types import Passage
from ragrelay.schemas.rag_chat import ErrorEvent, Message, RagQuery, SourcesEvent, StreamEvent
from ragrelay.services.fallback_controller import TERMINAL_ERROR_PREFIX
from ragrelay.services.generation import FinalResult, GenerationChunk, GenerationStream


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "AZURE_OPENAI_BASE_URL",
        "AZURE_OPENAI_ENDPOINT",
        "RAGRELAY_OPENAI_API",
        "RAGRELAY_CHAT_MODEL",
        "RAGRELAY_CANDIDATE_COUNT",
        "RAGRELAY_FINAL_COUNT",
        "RAGRELAY_RERANKERS",
        "RAGRELAY_HISTORY_RATIO",
        "RAGRELAY_MAX_HISTORY_MESSAGES",
    ):
        monkeypatch.delenv(name, raising=False)


class _FakeBackend:
    def __init__(self) -> None:
        self.models: list[str] = []

    def generate_stream(
        self,
        *,
        model_id: str,
        messages: Sequence[Message],
        tools: Sequence[str],
        config: Mapping[str, Any],
    ) -> GenerationStream:
        self.models.append(model_id)

        async def _chunks() -> AsyncIterator[GenerationChunk]:
            yield GenerationChunk(text="Alpha is first ")
            yield GenerationChunk(text="[Source: a.pdf, Chunk: 0]")

        async def _final() -> FinalResult:
            return FinalResult(text="Alpha is first [Source: a.pdf, Chunk: 0]")

        return GenerationStream(chunks=_chunks(), final_result=_final())


def test_ragrelay_accepts_azure_key_env_alias(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", "azure-test-key")

    client = RagRelay(openai_api_key=None)
    client._ensure_openai_key()

    assert os.getenv("OPENAI_API_KEY") == "azure-test-key"


@pytest.mark.asyncio
async def test_answer_without_key_returns_error_result(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    client = RagRelay(openai_api_key=None)
    events: list[StreamEvent] = []

    async def _sink(event: StreamEvent) -> None:
        events.append(event)

    result = await client.answer("what is X", session_id="s1", event_sink=_sink)

    assert result.accumulated_text.startswith(TERMINAL_ERROR_PREFIX)
    assert "Missing OpenAI API key" in result.accumulated_text
    assert result.session_id == "s1"
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error.startswith("Service error: Missing OpenAI API key")


@pytest.mark.asyncio
async def test_answer_with_invalid_query_returns_error_result(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _clear_env(monkeypatch)
    client = RagRelay(generation_backend=_FakeBackend())

    result = await client.answer("")

    assert result.accumulated_text.startswith(TERMINAL_ERROR_PREFIX)
    assert "text:" in result.accumulated_text
    assert result.session_id == ""


@pytest.mark.asyncio
async def test_stream_sse_without_key_ends_with_final_response(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _clear_env(monkeypatch)
    client = RagRelay(openai_api_key=None)

    frames = [frame async for frame in client.stream_sse("what is X", session_id="s1")]

    assert [frame.split("\n", 1)[0] for frame in frames] == [
        "event: error",
        "event: final_response",
    ]
    payload = json.loads(frames[-1].split("data: ", 1)[1])
    assert payload["response"].startswith(TERMINAL_ERROR_PREFIX)
    assert payload["sessionId"] == "s1"


def test_build_query_applies_fields_to_existing_query() -> None:
    base = RagQuery(text="what is X", session_id="s1", temperature_preset="creative")

    updated = RagRelay.build_query(base, session_id="s2", model="o3", tools=["tavily_search"])

    assert RagRelay.build_query(base) is base
    assert updated.text == "what is X"
    assert updated.session_id == "s2"
    assert updated.model_id == "o3"
    assert updated.temperature_preset == "creative"
    assert updated.tool_names == frozenset({"tavily_search"})


@pytest.mark.asyncio
async def test_answer_validates_fields_applied_to_existing_query(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _clear_env(monkeypatch)
    backend = _FakeBackend()
    client = RagRelay(generation_backend=backend)

    result = await client.answer(RagQuery(text="what is X", session_id="s1"), max_tokens=0)

    assert result.accumulated_text.startswith(TERMINAL_ERROR_PREFIX)
    assert "max_tokens" in result.accumulated_text
    assert result.session_id == "s1"
    assert backend.models == []


def test_ragrelay_sets_openai_base_url_from_argument(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    _ = RagRelay(
        openai_api_key="test-key",
        openai_base_url=" https://example-resource.openai.azure.com/openai/v1/ ",
    )

    assert os.getenv("OPENAI_BASE_URL") == "https://example-resource.openai.azure.com/openai/v1/"


def test_ragrelay_derives_base_url_from_azure_endpoint_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example-resource.openai.azure.com")

    _ = RagRelay(openai_api_key="test-key")

    assert os.getenv("OPENAI_BASE_URL") == "https://example-resource.openai.azure.com/openai/v1/"


def test_ragrelay_rejects_invalid_openai_api_mode_env(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("RAGRELAY_OPENAI_API", "invalid-mode")

    with pytest.raises(RagRelayConfigurationError, match="Invalid OpenAI API mode"):
        _ = RagRelay(openai_api_key=None)


def test_ragrelay_configures_openai_api_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")

    captured: dict[str, str] = {}

    def _fake_set_default_openai_api(value: str) -> None:
        captured["value"] = value

    monkeypatch.setattr(client_module, "set_default_openai_api", _fake_set_default_openai_api)

    _ = RagRelay(openai_api_key=None, openai_api="chat_completions")

    assert captured["value"] == "chat_completions"


def test_pipeline_settings_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("RAGRELAY_CANDIDATE_COUNT", "40")
    monkeypatch.setenv("RAGRELAY_FINAL_COUNT", "8")
    monkeypatch.setenv("RAGRELAY_RERANKERS", " cohere , bm25 ,")
    monkeypatch.setenv("RAGRELAY_HISTORY_RATIO", "0.5")

    settings = PipelineSettings.from_env()

    assert settings == PipelineSettings(
        candidate_count=40,
        final_count=8,
        reranker_order=("cohere", "bm25"),
        history_ratio=0.5,
        max_history_messages=50,
    )


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("RAGRELAY_CANDIDATE_COUNT", "many", "must be an integer"),
        ("RAGRELAY_FINAL_COUNT", "0", "must be >= 1"),
        ("RAGRELAY_HISTORY_RATIO", "1.5", r"must be in \(0, 1\]"),
    ],
)
def test_pipeline_settings_reject_bad_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv(name, value)

    with pytest.raises(RagRelayConfigurationError, match=message):
        PipelineSettings.from_env()


def test_add_passages_requires_builtin_store(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    class _ExternalStore:
        async def search(
            self, query_text: str, k: int, session_filter: str | None = None
        ) -> list[Passage]:
            return []

    client = RagRelay(store=_ExternalStore(), generation_backend=_FakeBackend())

    with pytest.raises(RagRelayConfigurationError, match="in-memory store"):
        client.add_passages([])


def test_answer_sync_runs_pipeline_with_custom_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    backend = _FakeBackend()
    client = RagRelay(model="gpt-4.1-mini", generation_backend=backend)
    added = client.add_passages(
        [
            Passage(
                document_id="doc-a",
                chunk_ordinal=0,
                source_file_name="a.pdf",
                text="Alpha comes first in the list.",
                session_id="s1",
            )
        ]
    )
    events: list[StreamEvent] = []

    async def _sink(event: StreamEvent) -> None:
        events.append(event)

    result = client.answer_sync("Which is alpha?", session_id="s1", event_sink=_sink)

    assert added == 1
    assert result.accumulated_text == "Alpha is first [Source: a.pdf, Chunk: 0]"
    assert result.session_id == "s1"
    assert backend.models == ["gpt-4.1-mini"]
    assert isinstance(events[0], SourcesEvent)
    assert events[0].sources[0].source_file_name == "a.pdf"
