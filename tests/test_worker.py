from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from listing_hunter.core.config import Settings
from listing_hunter.schemas.pipeline import PipelineRunRecord
from listing_hunter.services.collaborators import DiscoveryResult
from listing_hunter.services.hunter import ListingHunter
from listing_hunter.services.pipeline import PipelineConfig
from listing_hunter.worker import next_delay, run_worker


def test_next_delay_uses_interval_after_success() -> None:
    settings = Settings(otel_enabled=False, pipeline_interval_seconds=120.0)
    assert next_delay(settings, failed=False, backoff=8.0) == 120.0


def test_next_delay_backs_off_exponentially_up_to_cap() -> None:
    settings = Settings(otel_enabled=False, max_backoff_seconds=30.0)

    first = next_delay(settings, failed=True, backoff=1.0)
    assert 2.0 <= first <= 2.5
    second = next_delay(settings, failed=True, backoff=first)
    assert 2.0 * first <= second <= 2.5 * first
    assert next_delay(settings, failed=True, backoff=100.0) == 30.0


def test_run_worker_keeps_going_after_a_failed_run(tmp_path: Path) -> None:
    calls = 0

    async def discover(**_: Any) -> DiscoveryResult:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("source offline")
        return DiscoveryResult()

    settings = Settings(otel_enabled=False, pipeline_interval_seconds=0.0, max_backoff_seconds=0.01)

    async def run() -> list[PipelineRunRecord]:
        hunter = ListingHunter(
            database_path=str(tmp_path / "worker.sqlite"),
            pipeline_config=PipelineConfig(source_name="test"),
            discover=discover,
        )
        await run_worker(settings, hunter, max_runs=2)
        try:
            return await hunter.pipeline_runs.list_recent()
        finally:
            await hunter.close()

    runs = asyncio.run(run())

    assert calls == 2
    assert sorted(run.status for run in runs) == ["completed", "failed"]


def test_run_worker_exits_without_discover_collaborator(tmp_path: Path) -> None:
    settings = Settings(otel_enabled=False)

    async def run() -> list[PipelineRunRecord]:
        hunter = ListingHunter(
            database_path=str(tmp_path / "worker.sqlite"),
            pipeline_config=PipelineConfig(source_name="test"),
        )
        await run_worker(settings, hunter, max_runs=3)
        try:
            return await hunter.pipeline_runs.list_recent()
        finally:
            await hunter.close()

    assert asyncio.run(run()) == []
