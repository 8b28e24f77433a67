from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from ragrelay.errors import FallbackChainExhaustedError, RunCancelledError, StrategyFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    """One named attempt in an ordered fallback chain."""

    name: str
    run: Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class SyncStrategy(Generic[T]):
    name: str
    run: Callable[[], T]


def _exhausted(
    label: str,
    failures: list[StrategyFailure],
    exhausted: type[FallbackChainExhaustedError],
) -> FallbackChainExhaustedError:
    attempted = ", ".join(failure.strategy for failure in failures) or "none"
    return exhausted(f"{label}: every strategy failed (attempted: {attempted})", failures)


async def first_success(
    strategies: Sequence[Strategy[T]],
    *,
    label: str,
    exhausted: type[FallbackChainExhaustedError] = FallbackChainExhaustedError,
) -> T:
    """Attempt each strategy in order and return the first result.

    Strategies run sequentially, so later ones are never started once an
    earlier one succeeds. Each failure is logged with the strategy name.
    Cancellation is not a failure and propagates immediately.
    """
    failures: list[StrategyFailure] = []
    for strategy in strategies:
        try:
            return await strategy.run()
        except RunCancelledError:
            raise
        except Exception as exc:
            logger.warning("%s strategy failed strategy=%s error=%s", label, strategy.name, exc)
            failures.append(StrategyFailure(strategy=strategy.name, error=str(exc)))
    raise _exhausted(label, failures, exhausted)


def first_success_sync(
    strategies: Sequence[SyncStrategy[T]],
    *,
    label: str,
    exhausted: type[FallbackChainExhaustedError] = FallbackChainExhaustedError,
) -> T:
    failures: list[StrategyFailure] = []
    for strategy in strategies:
        try:
            return strategy.run()
        except Exception as exc:
            logger.debug("%s strategy failed strategy=%s error=%s", label, strategy.name, exc)
            failures.append(StrategyFailure(strategy=strategy.name, error=str(exc)))
    raise _exhausted(label, failures, exhausted)
