from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from listing_hunter.schemas.listings import BASE_FIELDS, Listing
from listing_hunter.schemas.pipeline import PipelineRunResult, PipelineRunStats
from listing_hunter.services.collaborators import DiscoverFn, EnrichFn, HydrateFn, RateFn, coerce_rating
from listing_hunter.services.pool import PoolOutcome, run_bounded
from listing_hunter.services.repository import (
    DocumentRepository,
    DuplicateListingError,
    ListingRepository,
    PipelineRunRepository,
    RepositoryConflictError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class PipelineConfig:
    source_name: str
    source_tools: Sequence[Any] = ()
    enrichment_prompt: str | None = None
    hydrate_concurrency: int = 5
    enrich_concurrency: int = 3
    rate_concurrency: int = 10
    backlog_batch_size: int = 50


class PipelineOrchestrator:
    """Runs discover -> dedupe -> hydrate -> enrich -> rate -> store, then the
    self-heal passes over the whole store's backlog.

    Only a failing ``discover`` call or a non-duplicate storage error fails the
    run. Every per-item collaborator failure is logged, counted, and the item
    carries on with the fields it already had.
    """

    def __init__(
        self,
        *,
        listings: ListingRepository,
        documents: DocumentRepository,
        pipeline_runs: PipelineRunRepository,
        config: PipelineConfig,
        discover: DiscoverFn,
        hydrate: HydrateFn | None = None,
        enrich: EnrichFn | None = None,
        rate: RateFn | None = None,
    ) -> None:
        self.listings = listings
        self.documents = documents
        self.pipeline_runs = pipeline_runs
        self.config = config
        self.discover = discover
        self.hydrate = hydrate
        self.enrich = enrich
        self.rate = rate

    async def run(self) -> PipelineRunResult:
        run_id = str(uuid4())
        await self.pipeline_runs.create(run_id)
        logger.info("pipeline run started run_id=%s source=%s", run_id, self.config.source_name)

        with tracer.start_as_current_span("pipeline.run") as span:
            span.set_attribute("pipeline.run_id", run_id)
            try:
                stats = await self._execute()
                await self.pipeline_runs.complete(run_id, stats)
            except RepositoryConflictError as exc:
                if await self._still_running(run_id):
                    await self._fail(run_id, exc)
                raise
            except Exception as exc:
                await self._fail(run_id, exc)
                raise
            span.set_attributes({f"pipeline.stats.{key}": value for key, value in stats.model_dump().items()})

        logger.info(
            "pipeline run completed run_id=%s discovered=%s duplicates=%s new=%s enriched=%s rated=%s "
            "backfilled_enrichment=%s re_rated=%s",
            run_id,
            stats.discovered,
            stats.duplicates,
            stats.new,
            stats.enriched,
            stats.rated,
            stats.backfilled_enrichment,
            stats.re_rated,
        )
        return PipelineRunResult(run_id=run_id, stats=stats)

    async def _still_running(self, run_id: str) -> bool:
        record = await self.pipeline_runs.get_by_id(run_id)
        return record is not None and record.status == "running"

    async def _fail(self, run_id: str, exc: Exception) -> None:
        logger.exception("pipeline run failed run_id=%s", run_id)
        try:
            await self.pipeline_runs.fail(run_id, str(exc) or type(exc).__name__)
        except Exception:
            # The caller re-raises the original error.
            logger.exception("could not record failure for pipeline run run_id=%s", run_id)

    async def _execute(self) -> PipelineRunStats:
        preference_profile = await self.documents.get_content("preference_profile")
        calibration_log = await self.documents.get_content("calibration_log")

        with tracer.start_as_current_span("pipeline.discover"):
            discovery = await self.discover(
                source_tools=self.config.source_tools,
                schema=self.listings.schema,
                preference_profile=preference_profile,
                source_name=self.config.source_name,
            )
        stats = PipelineRunStats(discovered=len(discovery.listings), rejected=discovery.rejected)
        logger.info(
            "discovery returned listings=%s rejected=%s tool_calls=%s steps=%s",
            len(discovery.listings),
            discovery.rejected,
            discovery.tool_call_count,
            discovery.steps_used,
        )

        batch: list[Listing] = []
        for listing in discovery.listings:
            if await self.listings.exists_by_source_key(listing.source_name, listing.source_id):
                stats.duplicates += 1
            else:
                batch.append(listing)

        batch = await self._hydrate_batch(batch, stats)
        batch, enriched_ids = await self._enrich_batch(batch, stats, preference_profile)
        batch = await self._rate_batch(batch, stats, preference_profile, calibration_log)
        stored_ids = await self._store_batch(batch, stats)

        # Same-batch duplicates never reach the store, so only stored ids count.
        enriched_stored = enriched_ids & stored_ids
        for listing_id in enriched_stored:
            await self.listings.mark_enriched(listing_id)
        stats.enriched = len(enriched_stored)

        await self._backfill_enrichment(stats, preference_profile, calibration_log)
        await self._rate_backlog(stats, preference_profile, calibration_log)
        return stats

    async def _hydrate_batch(self, batch: list[Listing], stats: PipelineRunStats) -> list[Listing]:
        hydrate = self.hydrate
        if hydrate is None or not batch:
            return batch
        schema = self.listings.schema

        async def hydrate_one(listing: Listing) -> Listing:
            patch = await hydrate(listing)
            return listing.with_patch(patch, schema) if patch else listing

        with tracer.start_as_current_span("pipeline.hydrate"):
            outcomes = await run_bounded(batch, self.config.hydrate_concurrency, hydrate_one)
        stats.hydrate_failures += _log_failures("hydrate", outcomes)
        return [outcome.value if outcome.ok and outcome.value is not None else outcome.item for outcome in outcomes]

    async def _enrich_batch(
        self,
        batch: list[Listing],
        stats: PipelineRunStats,
        preference_profile: str | None,
    ) -> tuple[list[Listing], set[str]]:
        enrich = self.enrich
        prompt = self.config.enrichment_prompt
        if enrich is None or not prompt or not batch:
            return batch, set()
        schema = self.listings.schema

        async def enrich_one(listing: Listing) -> Listing | None:
            patch = await enrich(listing, prompt, preference_profile)
            return listing.with_patch(patch, schema) if patch else None

        with tracer.start_as_current_span("pipeline.enrich"):
            outcomes = await run_bounded(batch, self.config.enrich_concurrency, enrich_one)
        stats.enrich_failures += _log_failures("enrich", outcomes)

        enriched_ids: set[str] = set()
        updated: list[Listing] = []
        for outcome in outcomes:
            if outcome.ok and outcome.value is not None:
                enriched_ids.add(outcome.value.id)
                updated.append(outcome.value)
            else:
                updated.append(outcome.item)
        return updated, enriched_ids

    async def _rate_batch(
        self,
        batch: list[Listing],
        stats: PipelineRunStats,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> list[Listing]:
        rate = self.rate
        if rate is None or not batch:
            return batch

        async def rate_one(listing: Listing) -> Listing | None:
            result = coerce_rating(await rate(listing, preference_profile, calibration_log))
            if result is None:
                return None
            return listing.model_copy(update={"ai_rating": result.rating, "ai_rating_reason": result.reason})

        with tracer.start_as_current_span("pipeline.rate"):
            outcomes = await run_bounded(batch, self.config.rate_concurrency, rate_one)
        stats.rate_failures += _log_failures("rate", outcomes)

        rated: list[Listing] = []
        for outcome in outcomes:
            if outcome.ok and outcome.value is not None:
                stats.rated += 1
                rated.append(outcome.value)
            else:
                rated.append(outcome.item)
        return rated

    async def _store_batch(self, batch: list[Listing], stats: PipelineRunStats) -> set[str]:
        stored_ids: set[str] = set()
        with tracer.start_as_current_span("pipeline.store"):
            for listing in batch:
                try:
                    await self.listings.insert(listing)
                except DuplicateListingError:
                    # Same-batch repeats and concurrent runs land here.
                    stats.duplicates += 1
                    logger.info(
                        "skipping duplicate listing source_name=%s source_id=%s",
                        listing.source_name,
                        listing.source_id,
                    )
                    continue
                stored_ids.add(listing.id)
        stats.new = len(stored_ids)
        return stored_ids

    async def _backfill_enrichment(
        self,
        stats: PipelineRunStats,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> None:
        enrich = self.enrich
        prompt = self.config.enrichment_prompt
        if enrich is None or not prompt:
            return

        backlog = await self.listings.query_unenriched(self.config.backlog_batch_size)
        if not backlog:
            return

        async def backfill_one(listing: Listing) -> bool:
            patch = await enrich(listing, prompt, preference_profile)
            if not patch:
                return False
            await self.listings.update_metadata(listing.id, _extension_patch(patch))
            await self.listings.mark_enriched(listing.id)
            return True

        with tracer.start_as_current_span("pipeline.backfill_enrichment"):
            outcomes = await run_bounded(backlog, self.config.enrich_concurrency, backfill_one)
        stats.enrich_failures += _log_failures("backfill enrich", outcomes)
        backfilled_ids = [outcome.item.id for outcome in outcomes if outcome.ok and outcome.value]
        stats.backfilled_enrichment = len(backfilled_ids)
        logger.info("backfilled enrichment for %s of %s unenriched listings", len(backfilled_ids), len(backlog))

        rate = self.rate
        if rate is None or not backfilled_ids:
            return

        # Enrichment may have changed fields the rater reads, so re-read first.
        fresh: list[Listing] = []
        for listing_id in backfilled_ids:
            listing = await self.listings.get_by_id(listing_id)
            if listing is not None:
                fresh.append(listing)

        with tracer.start_as_current_span("pipeline.re_rate"):
            outcomes = await run_bounded(
                fresh,
                self.config.rate_concurrency,
                lambda listing: self._rate_and_persist(rate, listing, preference_profile, calibration_log),
            )
        stats.rate_failures += _log_failures("re-rate", outcomes)
        stats.re_rated = sum(1 for outcome in outcomes if outcome.ok and outcome.value)

    async def _rate_backlog(
        self,
        stats: PipelineRunStats,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> None:
        rate = self.rate
        if rate is None or not preference_profile:
            return

        backlog = await self.listings.query_unrated(self.config.backlog_batch_size)
        if not backlog:
            return

        with tracer.start_as_current_span("pipeline.rate_backlog"):
            outcomes = await run_bounded(
                backlog,
                self.config.rate_concurrency,
                lambda listing: self._rate_and_persist(rate, listing, preference_profile, calibration_log),
            )
        stats.rate_failures += _log_failures("backlog rate", outcomes)
        rated = sum(1 for outcome in outcomes if outcome.ok and outcome.value)
        stats.rated += rated
        logger.info("rated %s of %s unrated backlog listings", rated, len(backlog))

    async def _rate_and_persist(
        self,
        rate: RateFn,
        listing: Listing,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> bool:
        result = coerce_rating(await rate(listing, preference_profile, calibration_log))
        if result is None:
            return False
        await self.listings.update_ai_rating(listing.id, result.rating, result.reason)
        return True


def _extension_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    ignored = [key for key in patch if key in BASE_FIELDS]
    if ignored:
        logger.debug("ignoring base fields in enrichment patch: %s", ignored)
    return {key: value for key, value in patch.items() if key not in BASE_FIELDS}


def _log_failures(stage: str, outcomes: list[PoolOutcome[Listing, Any]]) -> int:
    failures = 0
    for outcome in outcomes:
        if outcome.error is None:
            continue
        failures += 1
        logger.warning(
            "%s failed for listing_id=%s source_id=%s: %s",
            stage,
            outcome.item.id,
            outcome.item.source_id,
            outcome.error,
            exc_info=outcome.error,
        )
    return failures
