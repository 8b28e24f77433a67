from __future__ import annotations

import math
import re
import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace

from ragrelay.retrieval.types import Passage

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN_RE.findall(text)]


class _Bm25Scorer:
    """Small BM25 scorer over an in-memory token corpus."""

    def __init__(self, tokenized_docs: list[list[str]], *, k1: float = 1.5, b: float = 0.75) -> None:
        self._k1 = k1
        self._b = b
        doc_tf: list[dict[str, int]] = []
        df: dict[str, int] = {}
        doc_len: list[int] = []

        for tokens in tokenized_docs:
            tf: dict[str, int] = {}
            for token in tokens:
                tf[token] = tf.get(token, 0) + 1
            doc_tf.append(tf)
            doc_len.append(len(tokens))
            for token in set(tokens):
                df[token] = df.get(token, 0) + 1

        n_docs = len(tokenized_docs) or 1
        # BM25+ style idf.
        self._idf = {
            token: math.log(1 + (n_docs - freq + 0.5) / (freq + 0.5)) for token, freq in df.items()
        }
        self._doc_tf = doc_tf
        self._doc_len = doc_len
        self._avg_dl = (sum(doc_len) / n_docs) or 1.0

    def score(self, query: str) -> list[float]:
        query_tokens = _tokenize(query)
        if not query_tokens:
            return [0.0 for _ in self._doc_tf]

        scores: list[float] = []
        for idx, tf in enumerate(self._doc_tf):
            denom_norm = self._k1 * (1 - self._b + self._b * (self._doc_len[idx] / self._avg_dl))
            score = 0.0
            for token in query_tokens:
                freq = tf.get(token)
                if not freq:
                    continue
                score += self._idf.get(token, 0.0) * (freq * (self._k1 + 1)) / (freq + denom_norm)
            scores.append(score)
        return scores


def _rank(query: str, passages: Sequence[Passage]) -> list[tuple[int, float]]:
    scorer = _Bm25Scorer([_tokenize(passage.text) for passage in passages])
    indexed = list(enumerate(scorer.score(query)))
    indexed.sort(key=lambda pair: (-pair[1], pair[0]))
    return indexed


class InMemoryPassageStore:
    """Thread-safe in-memory passage store with session-scoped BM25 search."""

    def __init__(self, passages: Iterable[Passage] = ()) -> None:
        self._lock = threading.RLock()
        self._passages: list[Passage] = []
        self.add(passages)

    def add(self, passages: Iterable[Passage]) -> int:
        with self._lock:
            before = len(self._passages)
            self._passages.extend(passages)
            return len(self._passages) - before

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._passages = [p for p in self._passages if p.session_id != session_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._passages)

    async def search(
        self,
        query_text: str,
        k: int,
        session_filter: str | None = None,
    ) -> list[Passage]:
        with self._lock:
            scoped = [
                passage
                for passage in self._passages
                if session_filter is None or passage.session_id == session_filter
            ]
        if not scoped or k <= 0:
            return []

        results: list[Passage] = []
        for idx, score in _rank(query_text, scoped):
            if score <= 0 or len(results) >= k:
                break
            results.append(
                replace(scoped[idx], chunk_ordinal=len(results), relevance_score=float(score))
            )
        return results


class Bm25Reranker:
    """Local reranker that re-scores candidates lexically against the query."""

    name = "bm25"

    async def rerank(self, query_text: str, passages: list[Passage], k: int) -> list[Passage]:
        ranked = _rank(query_text, passages)
        return [
            replace(passages[idx], relevance_score=float(score)) for idx, score in ranked[:k]
        ]
