from __future__ import annotations

import re
from dataclasses import dataclass

from ragrelay.schemas.rag_chat import SourceMetadata

_MARKER_RE = re.compile(r"\[Source:\s*(?P<name>[^,\]]+?)\s*,\s*Chunk:\s*(?P<ordinal>\d+)\s*\]")


@dataclass(frozen=True)
class CitationValidationResult:
    ok: bool
    issues: list[str]
    cited_ordinals: list[int]


class CitationValidator:
    """Checks citation markers in generated text against the sources sent.

    The goal is not perfect attribution, but to flag markers the caller would
    be unable to resolve.
    """

    def validate(self, answer: str, sources: list[SourceMetadata]) -> CitationValidationResult:
        by_ordinal = {source.ordinal: source for source in sources}
        issues: list[str] = []
        cited: list[int] = []
        for match in _MARKER_RE.finditer(answer):
            ordinal = int(match.group("ordinal"))
            name = match.group("name")
            source = by_ordinal.get(ordinal)
            if source is None:
                issues.append(f"marker {match.group(0)!r} references unknown chunk {ordinal}")
                continue
            if source.source_file_name != name:
                issues.append(
                    f"marker {match.group(0)!r} names {name!r} but chunk {ordinal} "
                    f"is {source.source_file_name!r}"
                )
                continue
            if ordinal not in cited:
                cited.append(ordinal)
        return CitationValidationResult(ok=not issues, issues=issues, cited_ordinals=cited)
