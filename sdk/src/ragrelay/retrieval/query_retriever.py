from __future__ import annotations

import logging
from typing import Protocol

from ragrelay.errors import RetrievalUnavailableError
from ragrelay.retrieval.types import Passage

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_COUNT = 20


class RetrievalStore(Protocol):
    async def search(
        self,
        query_text: str,
        k: int,
        session_filter: str | None = None,
    ) -> list[Passage]: ...


class QueryRetriever:
    """Runs the session-scoped similarity search that seeds a pipeline run."""

    def __init__(self, *, store: RetrievalStore, candidate_count: int = DEFAULT_CANDIDATE_COUNT) -> None:
        self._store = store
        self._candidate_count = candidate_count

    @property
    def candidate_count(self) -> int:
        return self._candidate_count

    async def retrieve(self, query_text: str, *, session_id: str | None = None) -> list[Passage]:
        try:
            candidates = await self._store.search(
                query_text,
                self._candidate_count,
                session_filter=session_id or None,
            )
        except Exception as exc:
            raise RetrievalUnavailableError(
                f"Retrieval store search failed: {exc or type(exc).__name__}"
            ) from exc

        candidates = list(candidates)
        if not session_id or not candidates:
            return candidates

        scoped = [p for p in candidates if p.session_id in (None, session_id)]
        if not scoped:
            # The store ignored the scope filter; prefer an answer over an empty context.
            logger.warning(
                "session filter removed every candidate session_id=%s candidates=%s",
                session_id,
                len(candidates),
            )
            return candidates
        return scoped
