from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Passage:
    """A retrieved chunk of source-document text plus metadata."""

    document_id: str
    chunk_ordinal: int
    source_file_name: str
    text: str
    page_number: int | None = None
    relevance_score: float | None = None
    session_id: str | None = None
