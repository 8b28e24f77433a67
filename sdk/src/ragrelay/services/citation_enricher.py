from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace

from ragrelay.retrieval.types import Passage
from ragrelay.schemas.rag_chat import SourceMetadata


def citation_marker(source_file_name: str, ordinal: int) -> str:
    return f"[Source: {source_file_name}, Chunk: {ordinal}]"


@dataclass(frozen=True)
class EnrichedPassage:
    passage: Passage
    ordinal: int
    source: SourceMetadata
    annotated_text: str


def enrich_passages(passages: Sequence[Passage]) -> list[EnrichedPassage]:
    """Assign 0-based citation ordinals in final selection order.

    The structured source and the inline marker carry the same ordinal so a
    marker quoted by the model resolves back to its source.
    """
    enriched: list[EnrichedPassage] = []
    for ordinal, passage in enumerate(passages):
        selected = replace(passage, chunk_ordinal=ordinal)
        enriched.append(
            EnrichedPassage(
                passage=selected,
                ordinal=ordinal,
                source=SourceMetadata(
                    document_id=selected.document_id,
                    ordinal=ordinal,
                    source_file_name=selected.source_file_name,
                    page_number=selected.page_number,
                ),
                annotated_text=(
                    f"{citation_marker(selected.source_file_name, ordinal)}\n{selected.text}"
                ),
            )
        )
    return enriched
