from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Protocol

from ragrelay.errors import AllRerankersFailedError, RunCancelledError
from ragrelay.retrieval.types import Passage
from ragrelay.services.fallback_chain import Strategy, first_success

logger = logging.getLogger(__name__)

DEFAULT_FINAL_COUNT = 5
DEFAULT_RERANKER_ORDER = ("bm25",)


class RerankerBackend(Protocol):
    async def rerank(self, query_text: str, passages: list[Passage], k: int) -> list[Passage]: ...


class RerankerSelector:
    """Narrows candidates to the final passage set.

    Rerankers are tried in the configured order and the first success wins.
    When every backend fails the first ``final_count`` candidates are kept in
    their original order. Selection only raises when the run is cancelled.
    """

    def __init__(
        self,
        *,
        backends: Mapping[str, RerankerBackend],
        order: Sequence[str] = DEFAULT_RERANKER_ORDER,
        final_count: int = DEFAULT_FINAL_COUNT,
    ) -> None:
        self._backends = dict(backends)
        self._order = tuple(order)
        self._final_count = final_count

    @property
    def final_count(self) -> int:
        return self._final_count

    def _strategy(
        self,
        name: str,
        query_text: str,
        candidates: list[Passage],
        should_cancel: Callable[[], bool] | None = None,
    ) -> Strategy[list[Passage]]:
        n = self._final_count

        async def _run() -> list[Passage]:
            if should_cancel is not None and should_cancel():
                raise RunCancelledError()
            backend = self._backends.get(name)
            if backend is None:
                raise LookupError(f"reranker {name!r} is not registered")
            reranked = await backend.rerank(query_text, list(candidates), n)
            return list(reranked)[:n]

        return Strategy(name=name, run=_run)

    async def select(
        self,
        query_text: str,
        candidates: Sequence[Passage],
        *,
        should_cancel: Callable[[], bool] | None = None,
    ) -> list[Passage]:
        candidates = list(candidates)
        n = self._final_count
        if len(candidates) <= n:
            return candidates

        strategies = [
            self._strategy(name, query_text, candidates, should_cancel) for name in self._order
        ]
        try:
            return await first_success(strategies, label="rerank", exhausted=AllRerankersFailedError)
        except AllRerankersFailedError as exc:
            logger.warning("%s; truncating to first %s candidates", exc, n)
            return candidates[:n]
