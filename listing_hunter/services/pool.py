from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(slots=True)
class PoolOutcome(Generic[T, R]):
    item: T
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
) -> list[PoolOutcome[T, R]]:
    """Run ``fn`` over ``items`` with at most ``min(limit, len(items))`` calls in flight.

    Outcomes line up with ``items`` by index. A failing item records its
    exception in its outcome and never cancels sibling work.
    """
    outcomes: list[PoolOutcome[T, R]] = [PoolOutcome(item=item) for item in items]
    if not items:
        return outcomes

    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(items):
            # Claim and advance with no await in between.
            index = cursor
            cursor += 1
            outcome = outcomes[index]
            try:
                outcome.value = await fn(outcome.item)
            except Exception as exc:
                outcome.error = exc

    await asyncio.gather(*(worker() for _ in range(min(max(1, limit), len(items)))))
    return outcomes
