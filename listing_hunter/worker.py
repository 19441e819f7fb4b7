from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from listing_hunter.core.config import Settings, get_settings
from listing_hunter.core.telemetry import shutdown_telemetry, start_observability
from listing_hunter.services.hunter import ListingHunter, build_hunter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_delay(settings: Settings, *, failed: bool, backoff: float) -> float:
    """Seconds to sleep before the next run, and the backoff to carry forward."""
    if not failed:
        return settings.pipeline_interval_seconds
    jitter = random.uniform(0.0, 0.5)
    return min(max(backoff, 1.0) * (2.0 + jitter), settings.max_backoff_seconds)


async def run_worker(settings: Settings | None = None, hunter: ListingHunter | None = None, *, max_runs: int | None = None) -> None:
    settings = settings or get_settings()
    telemetry_runtime = start_observability(settings, role="worker")
    hunter = hunter or build_hunter(settings)
    if hunter.pipeline is None:
        logger.error("no discover collaborator configured; set LH_COLLABORATOR_BASE_URL")
        shutdown_telemetry(telemetry_runtime)
        await hunter.close()
        return

    backoff = 1.0
    runs = 0
    try:
        while max_runs is None or runs < max_runs:
            runs += 1
            failed = False
            try:
                with tracer.start_as_current_span("worker.pipeline_cycle"):
                    result = await hunter.run_pipeline()
                logger.info("pipeline run %s finished new=%s", result.run_id, result.stats.new)
                backoff = 1.0
            except Exception as exc:
                failed = True
                logger.exception("pipeline run failed: %s", exc)

            delay = next_delay(settings, failed=failed, backoff=backoff)
            if failed:
                backoff = delay
                logger.info("retrying pipeline in %.1fs", delay)
            if max_runs is not None and runs >= max_runs:
                break
            await asyncio.sleep(delay)
    finally:
        shutdown_telemetry(telemetry_runtime)
        await hunter.close()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
