from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeVar, cast

from agents import set_default_openai_api
from pydantic import ValidationError

from ragrelay.errors import RagRelayConfigurationError
from ragrelay.retrieval.bm25_search import Bm25Reranker, InMemoryPassageStore
from ragrelay.retrieval.query_retriever import (
    DEFAULT_CANDIDATE_COUNT,
    QueryRetriever,
    RetrievalStore,
)
from ragrelay.retrieval.reranker_selector import (
    DEFAULT_FINAL_COUNT,
    DEFAULT_RERANKER_ORDER,
    RerankerBackend,
    RerankerSelector,
)
from ragrelay.retrieval.types import Passage
from ragrelay.schemas.rag_chat import ErrorEvent, Message, RagQuery, TemperaturePreset
from ragrelay.services.agents_backend import AgentsGenerationBackend
from ragrelay.services.event_emitter import EventEmitter, EventSink
from ragrelay.services.fallback_controller import TERMINAL_ERROR_PREFIX
from ragrelay.services.generation import (
    GenerationBackend,
    GenerationOrchestrator,
    GenerationResult,
)
from ragrelay.services.history_trimmer import (
    DEFAULT_HISTORY_RATIO,
    DEFAULT_MAX_HISTORY_MESSAGES,
    HistoryTrimmer,
)
from ragrelay.services.prompt_assembler import (
    PromptAssembler,
    PromptTemplateProvider,
    RagAssistantPromptTemplate,
)
from ragrelay.services.rag_pipeline import RagPipeline
from ragrelay.services.tool_registry import ToolRegistry, default_tool_registry
from ragrelay.transport.sse import TransportEncoder, sse_stream

logger = logging.getLogger(__name__)

OpenAIApi = Literal["chat_completions", "responses"]

_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_AZURE_OPENAI_API_KEY_ENV = "AZURE_OPENAI_API_KEY"
_OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
_AZURE_OPENAI_BASE_URL_ENV = "AZURE_OPENAI_BASE_URL"
_AZURE_OPENAI_ENDPOINT_ENV = "AZURE_OPENAI_ENDPOINT"
_OPENAI_API_MODE_ENV = "RAGRELAY_OPENAI_API"
_SUPPORTED_OPENAI_APIS = frozenset({"responses", "chat_completions"})

T = TypeVar("T")


def _run_awaitable(factory: Callable[[], Awaitable[T]]) -> T:
    """Run an awaitable factory from sync code.

    If an event loop is already running in the current thread (e.g., Jupyter),
    the coroutine is executed in a dedicated thread via asyncio.run.
    """

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(cast(Coroutine[Any, Any, T], factory()))

    result: dict[str, T] = {}
    error: dict[str, BaseException] = {}

    def _target() -> None:
        try:
            result["value"] = asyncio.run(cast(Coroutine[Any, Any, T], factory()))
        except BaseException as exc:  # pragma: no cover
            error["exc"] = exc

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    thread.join()

    if "exc" in error:
        raise error["exc"]

    if "value" not in result:  # pragma: no cover
        raise RuntimeError("Async execution failed without an exception")

    return result["value"]


def _read_non_empty_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def _read_int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _read_non_empty_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RagRelayConfigurationError(f"{name} must be an integer, got {raw!r}.") from None
    if value < minimum:
        raise RagRelayConfigurationError(f"{name} must be >= {minimum}, got {value}.")
    return value


def _read_float_env(name: str, default: float) -> float:
    raw = _read_non_empty_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RagRelayConfigurationError(f"{name} must be a number, got {raw!r}.") from None
    if not 0 < value <= 1:
        raise RagRelayConfigurationError(f"{name} must be in (0, 1], got {value}.")
    return value


def _read_list_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = _read_non_empty_env(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _resolve_openai_api_key(explicit_key: str | None) -> str | None:
    if explicit_key is not None:
        stripped = explicit_key.strip()
        return stripped or None
    return _read_non_empty_env(_OPENAI_API_KEY_ENV, _AZURE_OPENAI_API_KEY_ENV)


def _azure_endpoint_to_base_url(endpoint: str) -> str:
    normalized = endpoint.strip().rstrip("/")
    if normalized.endswith("/openai/v1"):
        return normalized + "/"
    if normalized.endswith("/openai"):
        return normalized + "/v1/"
    return normalized + "/openai/v1/"


def _resolve_openai_base_url(explicit_base_url: str | None) -> str | None:
    if explicit_base_url is not None:
        stripped = explicit_base_url.strip()
        return stripped or None

    configured_base_url = _read_non_empty_env(_OPENAI_BASE_URL_ENV, _AZURE_OPENAI_BASE_URL_ENV)
    if configured_base_url:
        return configured_base_url

    azure_endpoint = _read_non_empty_env(_AZURE_OPENAI_ENDPOINT_ENV)
    if azure_endpoint:
        return _azure_endpoint_to_base_url(azure_endpoint)

    return None


def _normalize_openai_api(value: str) -> OpenAIApi:
    normalized = value.strip().lower()
    if normalized not in _SUPPORTED_OPENAI_APIS:
        supported = ", ".join(sorted(_SUPPORTED_OPENAI_APIS))
        raise RagRelayConfigurationError(
            f"Invalid OpenAI API mode {value!r}. Use one of: {supported}."
        )
    return cast(OpenAIApi, normalized)


@dataclass(frozen=True)
class PipelineSettings:
    candidate_count: int = DEFAULT_CANDIDATE_COUNT
    final_count: int = DEFAULT_FINAL_COUNT
    reranker_order: tuple[str, ...] = DEFAULT_RERANKER_ORDER
    history_ratio: float = DEFAULT_HISTORY_RATIO
    max_history_messages: int = DEFAULT_MAX_HISTORY_MESSAGES

    @classmethod
    def from_env(cls) -> PipelineSettings:
        return cls(
            candidate_count=_read_int_env("RAGRELAY_CANDIDATE_COUNT", DEFAULT_CANDIDATE_COUNT, minimum=1),
            final_count=_read_int_env("RAGRELAY_FINAL_COUNT", DEFAULT_FINAL_COUNT, minimum=1),
            reranker_order=_read_list_env("RAGRELAY_RERANKERS", DEFAULT_RERANKER_ORDER),
            history_ratio=_read_float_env("RAGRELAY_HISTORY_RATIO", DEFAULT_HISTORY_RATIO),
            max_history_messages=_read_int_env(
                "RAGRELAY_MAX_HISTORY_MESSAGES", DEFAULT_MAX_HISTORY_MESSAGES
            ),
        )


class RagRelay:
    """ragrelay facade.

    Wires the retrieval store, reranker chain, prompt template and generation
    backend into a :class:`RagPipeline` and exposes:

    - ``answer``: run the pipeline, pushing stream events to an optional sink
    - ``stream_sse``: run the pipeline and yield SSE wire frames

    Parameters
    ----------
    openai_api_key:
        If provided, sets ``OPENAI_API_KEY`` for the process (used by ``openai-agents``).
        ``AZURE_OPENAI_API_KEY`` is also accepted as an alias.
    openai_base_url:
        Optional OpenAI-compatible base URL override.
    openai_api:
        Optional API shape override for the Agents SDK (`responses` or
        `chat_completions`). Falls back to ``RAGRELAY_OPENAI_API``.
    model:
        Optional default model id. Sets ``RAGRELAY_CHAT_MODEL``.
    store / rerankers / prompt_template / tool_registry / generation_backend:
        Collaborator overrides. Defaults are an in-memory BM25 passage store,
        the local ``bm25`` reranker, the built-in assistant template, the
        built-in web tools and the OpenAI Agents backend.
    """

    def __init__(
        self,
        openai_api_key: str | None = None,
        *,
        openai_base_url: str | None = None,
        openai_api: OpenAIApi | None = None,
        model: str | None = None,
        settings: PipelineSettings | None = None,
        store: RetrievalStore | None = None,
        rerankers: Mapping[str, RerankerBackend] | None = None,
        prompt_template: PromptTemplateProvider | None = None,
        tool_registry: ToolRegistry | None = None,
        generation_backend: GenerationBackend | None = None,
    ) -> None:
        resolved_api_key = _resolve_openai_api_key(openai_api_key)
        if resolved_api_key is not None:
            os.environ[_OPENAI_API_KEY_ENV] = resolved_api_key

        resolved_base_url = _resolve_openai_base_url(openai_base_url)
        if resolved_base_url is not None:
            os.environ[_OPENAI_BASE_URL_ENV] = resolved_base_url

        if model is not None:
            os.environ["RAGRELAY_CHAT_MODEL"] = model

        resolved_api_mode: OpenAIApi | None
        if openai_api is not None:
            resolved_api_mode = _normalize_openai_api(openai_api)
        else:
            env_mode = _read_non_empty_env(_OPENAI_API_MODE_ENV)
            resolved_api_mode = _normalize_openai_api(env_mode) if env_mode is not None else None

        if resolved_api_mode is not None:
            set_default_openai_api(resolved_api_mode)

        self._settings = settings or PipelineSettings.from_env()
        self._store: RetrievalStore = store if store is not None else InMemoryPassageStore()
        self._tool_registry = tool_registry or default_tool_registry()
        self._uses_openai = generation_backend is None
        self._generation_backend: GenerationBackend = generation_backend or AgentsGenerationBackend(
            tool_registry=self._tool_registry,
            openai_api=resolved_api_mode or "responses",
        )

        reranker_backends: dict[str, RerankerBackend] = {"bm25": Bm25Reranker()}
        reranker_backends.update(rerankers or {})

        self._pipeline = RagPipeline(
            retriever=QueryRetriever(store=self._store, candidate_count=self._settings.candidate_count),
            selector=RerankerSelector(
                backends=reranker_backends,
                order=self._settings.reranker_order,
                final_count=self._settings.final_count,
            ),
            assembler=PromptAssembler(template=prompt_template or RagAssistantPromptTemplate()),
            generator=GenerationOrchestrator(backend=self._generation_backend),
            history_trimmer=HistoryTrimmer(
                ratio=self._settings.history_ratio,
                max_messages=self._settings.max_history_messages,
            ),
            tool_registry=self._tool_registry,
        )

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    @property
    def store(self) -> RetrievalStore:
        return self._store

    @property
    def pipeline(self) -> RagPipeline:
        return self._pipeline

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._tool_registry

    def _ensure_openai_key(self) -> None:
        if not self._uses_openai:
            return
        resolved_api_key = _resolve_openai_api_key(None)
        if resolved_api_key:
            os.environ[_OPENAI_API_KEY_ENV] = resolved_api_key
            return
        raise RagRelayConfigurationError(
            "Missing OpenAI API key. Provide RagRelay(openai_api_key=...) or set "
            "OPENAI_API_KEY / AZURE_OPENAI_API_KEY."
        )

    def add_passages(self, passages: Iterable[Passage]) -> int:
        if not isinstance(self._store, InMemoryPassageStore):
            raise RagRelayConfigurationError(
                "add_passages requires the built-in in-memory store; "
                "index passages through your own store instead."
            )
        return self._store.add(passages)

    @staticmethod
    def build_query(
        query: RagQuery | str,
        *,
        session_id: str | None = None,
        model: str | None = None,
        temperature_preset: TemperaturePreset | None = None,
        max_tokens: int | None = None,
        tools: Iterable[str] | None = None,
        history: Iterable[Message] | None = None,
    ) -> RagQuery:
        """Build a ``RagQuery`` from text, or apply the given fields to an existing one."""
        overrides: dict[str, Any] = {
            "session_id": session_id,
            "model_id": model,
            "temperature_preset": temperature_preset,
            "max_tokens": max_tokens,
            "tool_names": frozenset(tools) if tools is not None else None,
            "history": tuple(history) if history is not None else None,
        }
        fields = {name: value for name, value in overrides.items() if value is not None}
        if isinstance(query, RagQuery):
            if not fields:
                return query
            return RagQuery.model_validate({**dict(query), **fields})
        return RagQuery(text=query, **fields)

    def _prepare(self, query: RagQuery | str, query_fields: Mapping[str, Any]) -> RagQuery:
        self._ensure_openai_key()
        return self.build_query(query, **query_fields)

    @staticmethod
    def _rejected(
        query: RagQuery | str, query_fields: Mapping[str, Any], exc: Exception
    ) -> tuple[ErrorEvent, GenerationResult]:
        if isinstance(exc, ValidationError):
            message = "; ".join(
                f"{'.'.join(map(str, error['loc']))}: {error['msg']}" for error in exc.errors()
            )
        else:
            message = str(exc)
        logger.error("rag run rejected error=%s", message)
        if isinstance(query, RagQuery):
            session_id = query.session_id or ""
        else:
            session_id = str(query_fields.get("session_id") or "")
        return (
            ErrorEvent(error=f"Service error: {message}"),
            GenerationResult(
                accumulated_text=f"{TERMINAL_ERROR_PREFIX} {message}",
                session_id=session_id,
            ),
        )

    async def answer(
        self,
        query: RagQuery | str,
        *,
        event_sink: EventSink | None = None,
        cancel_event: asyncio.Event | None = None,
        **query_fields: Any,
    ) -> GenerationResult:
        """Run the pipeline. Never raises; failures come back as error events and text."""
        try:
            rag_query = self._prepare(query, query_fields)
        except (RagRelayConfigurationError, ValidationError) as exc:
            error_event, result = self._rejected(query, query_fields, exc)
            emitter = EventEmitter(event_sink, cancel_event=cancel_event)
            await emitter.emit(error_event)
            emitter.close()
            return result
        return await self._pipeline.run(rag_query, event_sink=event_sink, cancel_event=cancel_event)

    def answer_sync(self, query: RagQuery | str, **query_fields: Any) -> GenerationResult:
        return _run_awaitable(lambda: self.answer(query, **query_fields))

    async def stream_sse(
        self,
        query: RagQuery | str,
        *,
        cancel_event: asyncio.Event | None = None,
        **query_fields: Any,
    ) -> AsyncIterator[str]:
        try:
            rag_query = self._prepare(query, query_fields)
        except (RagRelayConfigurationError, ValidationError) as exc:
            error_event, result = self._rejected(query, query_fields, exc)
            encoder = TransportEncoder()
            yield encoder.encode_event(error_event)
            yield encoder.encode_result(result)
            return
        async for frame in sse_stream(self._pipeline, rag_query, cancel_event=cancel_event):
            yield frame
