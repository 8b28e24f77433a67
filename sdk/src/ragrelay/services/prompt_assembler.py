from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from ragrelay.errors import PromptTemplateUnavailableError
from ragrelay.schemas.rag_chat import Message
from ragrelay.services.citation_enricher import EnrichedPassage
from ragrelay.services.fallback_chain import Strategy, first_success

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = (
    "You are a document Q&A assistant. Answer using only the provided documents. "
    "If the documents do not contain the answer, say you can't reliably answer."
)

_NO_CONTENT = "No content available"


class PromptTemplateProvider(Protocol):
    async def render(self, variables: Mapping[str, Any]) -> list[Message]: ...


class RagAssistantPromptTemplate:
    """Default grounded-answer template with inline citation instructions."""

    async def render(self, variables: Mapping[str, Any]) -> list[Message]:
        query = str(variables.get("query", "")).strip()
        context: list[str] = list(variables.get("context") or [])
        context_block = "\n\n".join(context) if context else _NO_CONTENT

        instructions = f"""You are a document Q&A assistant.
Answer questions using only the provided context.

## Values:
- factual: you never fabricate or infer information.
  * if the information is present in the context, you use it and cite it.
  * if the information is not present in the context, you state you can't reliably answer.

## Citations:
- every context passage starts with a marker such as `[Source: report.pdf, Chunk: 0]`.
- cite by reproducing that exact marker right after the claim it supports.
- never invent a marker that does not appear in the context.

**CRITICAL: Answer only to the scope of the question asked.**"""

        return [
            Message.from_text("system", instructions),
            Message.from_text("user", f"## Context:\n{context_block}\n\n## Question:\n{query}"),
        ]


def synthesize_prompt(query_text: str, passages: Sequence[EnrichedPassage]) -> list[Message]:
    """Single user message embedding the raw query and flattened passage text."""
    documents = "\n\n".join(p.passage.text for p in passages if p.passage.text) or _NO_CONTENT
    return [Message.from_text("user", f"Query: {query_text}\nDocuments: {documents}")]


class PromptAssembler:
    """Builds the ordered message list sent to the generation backend."""

    def __init__(
        self,
        *,
        template: PromptTemplateProvider | None = None,
        default_system_message: str = DEFAULT_SYSTEM_MESSAGE,
    ) -> None:
        self._template = template
        self._default_system = Message.from_text("system", default_system_message)

    async def _render_template(
        self, query_text: str, passages: Sequence[EnrichedPassage]
    ) -> list[Message]:
        template = self._template
        if template is None:
            raise PromptTemplateUnavailableError("no prompt template configured")
        messages = await template.render(
            {"query": query_text, "context": [p.annotated_text for p in passages]}
        )
        if not messages:
            raise PromptTemplateUnavailableError("prompt template returned no messages")
        return list(messages)

    async def template_messages(
        self, query_text: str, passages: Sequence[EnrichedPassage]
    ) -> list[Message]:
        if self._template is None:
            return synthesize_prompt(query_text, passages)
        try:
            return await first_success(
                [Strategy(name="template", run=lambda: self._render_template(query_text, passages))],
                label="prompt",
                exhausted=PromptTemplateUnavailableError,
            )
        except PromptTemplateUnavailableError as exc:
            logger.warning("%s; using synthesized prompt", exc)
            return synthesize_prompt(query_text, passages)

    def assemble(
        self, *, history: Sequence[Message], template_messages: Sequence[Message]
    ) -> list[Message]:
        """Merge into [system] + history + template, with exactly one system message first."""
        system = next((m for m in template_messages if m.role == "system"), self._default_system)
        return [
            system,
            *(m for m in history if m.role != "system"),
            *(m for m in template_messages if m.role != "system"),
        ]

    async def build(
        self,
        *,
        query_text: str,
        history: Sequence[Message],
        passages: Sequence[EnrichedPassage],
    ) -> list[Message]:
        template_messages = await self.template_messages(query_text, passages)
        return self.assemble(history=history, template_messages=template_messages)
