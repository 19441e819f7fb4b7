from __future__ import annotations

import asyncio

from listing_hunter.services.pool import run_bounded


def test_run_bounded_never_exceeds_limit_and_processes_each_item_once() -> None:
    in_flight = 0
    peak = 0
    seen: list[int] = []

    async def work(item: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001 * (item % 3))
        seen.append(item)
        in_flight -= 1
        return item * 2

    outcomes = asyncio.run(run_bounded(list(range(20)), 4, work))

    assert peak <= 4
    assert sorted(seen) == list(range(20))
    assert [outcome.value for outcome in outcomes] == [item * 2 for item in range(20)]


def test_run_bounded_caps_workers_at_item_count() -> None:
    in_flight = 0
    peak = 0

    async def work(item: str) -> str:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return item

    outcomes = asyncio.run(run_bounded(["a", "b"], 10, work))

    assert peak == 2
    assert [outcome.value for outcome in outcomes] == ["a", "b"]


def test_run_bounded_isolates_failures() -> None:
    async def work(item: int) -> int:
        await asyncio.sleep(0)
        if item == 2:
            raise RuntimeError("boom")
        return item

    outcomes = asyncio.run(run_bounded([1, 2, 3, 4], 2, work))

    assert [outcome.ok for outcome in outcomes] == [True, False, True, True]
    assert isinstance(outcomes[1].error, RuntimeError)
    assert outcomes[1].item == 2
    assert [outcome.value for outcome in outcomes if outcome.ok] == [1, 3, 4]


def test_run_bounded_with_no_items_returns_empty() -> None:
    async def work(item: int) -> int:
        raise AssertionError("should not be called")

    assert asyncio.run(run_bounded([], 3, work)) == []
