from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from ragrelay.schemas.rag_chat import Message
from ragrelay.services.model_capabilities import lookup_capabilities

DEFAULT_HISTORY_RATIO = 0.6
DEFAULT_MAX_HISTORY_MESSAGES = 50


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: normalized character count / 4, rounded up."""
    normalized = " ".join(text.split())
    if not normalized:
        return 0
    return math.ceil(len(normalized) / 4)


@dataclass(frozen=True)
class HistoryTrimmer:
    ratio: float = DEFAULT_HISTORY_RATIO
    max_messages: int | None = DEFAULT_MAX_HISTORY_MESSAGES

    def budget_for(self, token_limit: int) -> int:
        return math.floor(token_limit * self.ratio)

    def trim(self, history: Sequence[Message], *, token_limit: int) -> list[Message]:
        """Keep the newest messages whose estimated token sum fits the budget.

        Walks backward from the newest message and stops at the first message
        that would push the running sum over budget; that message and every
        older one are dropped. Kept messages stay in chronological order.
        """
        budget = self.budget_for(token_limit)
        candidates = list(history)
        if self.max_messages is not None:
            candidates = candidates[-self.max_messages :] if self.max_messages > 0 else []

        kept: list[Message] = []
        total = 0
        for message in reversed(candidates):
            tokens = estimate_tokens(message.text)
            if total + tokens > budget:
                break
            total += tokens
            kept.append(message)
        kept.reverse()
        return kept

    def trim_for_model(self, history: Sequence[Message], model_id: str | None) -> list[Message]:
        limit = lookup_capabilities(model_id).history_token_limit
        return self.trim(history, token_limit=limit)
