from __future__ import annotations

from functools import lru_cache
import logging

from listing_hunter.core.config import Settings, get_settings
from listing_hunter.schemas.listings import ListingSchema, RateListingResponse
from listing_hunter.schemas.pipeline import CalibrationResult, PipelineRunResult
from listing_hunter.services.calibration import DEFAULT_CALIBRATION_THRESHOLD, CalibrationLoop
from listing_hunter.services.collaborators import (
    CalibrateFn,
    CollaboratorError,
    DiscoverFn,
    EnrichFn,
    HydrateFn,
    RateFn,
    RemoteCollaborators,
)
from listing_hunter.services.pipeline import PipelineConfig, PipelineOrchestrator
from listing_hunter.services.repository import (
    DocumentRepository,
    ListingRepository,
    PipelineRunRepository,
    RatingOverrideRepository,
    SourceCursorRepository,
    SqliteDatabase,
)

logger = logging.getLogger(__name__)


class ListingHunter:
    """Stores, pipeline orchestrator and calibration loop over one database file."""

    def __init__(
        self,
        *,
        database_path: str,
        pipeline_config: PipelineConfig,
        schema: ListingSchema | None = None,
        discover: DiscoverFn | None = None,
        hydrate: HydrateFn | None = None,
        enrich: EnrichFn | None = None,
        rate: RateFn | None = None,
        calibrate: CalibrateFn | None = None,
        calibration_threshold: int = DEFAULT_CALIBRATION_THRESHOLD,
    ) -> None:
        self.db = SqliteDatabase(database_path)
        self.listings = ListingRepository(self.db, schema)
        self.documents = DocumentRepository(self.db)
        self.rating_overrides = RatingOverrideRepository(self.db)
        self.pipeline_runs = PipelineRunRepository(self.db)
        self.source_cursors = SourceCursorRepository(self.db)
        self.calibration = CalibrationLoop(
            documents=self.documents,
            rating_overrides=self.rating_overrides,
            calibrate=calibrate,
            threshold=calibration_threshold,
        )
        self.pipeline: PipelineOrchestrator | None = None
        if discover is not None:
            self.pipeline = PipelineOrchestrator(
                listings=self.listings,
                documents=self.documents,
                pipeline_runs=self.pipeline_runs,
                config=pipeline_config,
                discover=discover,
                hydrate=hydrate,
                enrich=enrich,
                rate=rate,
            )

    async def run_pipeline(self) -> PipelineRunResult:
        if self.pipeline is None:
            raise CollaboratorError("no discover collaborator configured")
        return await self.pipeline.run()

    async def rate_listing_by_id(
        self,
        listing_id: str,
        user_rating: int,
        note: str | None = None,
    ) -> RateListingResponse:
        previous = await self.listings.require(listing_id)
        listing = await self.listings.update_rating(listing_id, user_rating, note)
        triggered = await self.calibration.record_rating(previous, user_rating, note)
        return RateListingResponse(listing=listing, calibration_triggered=triggered)

    async def run_calibration(self) -> CalibrationResult:
        calibration_log = await self.calibration.run()
        return CalibrationResult(updated=calibration_log is not None, calibration_log=calibration_log)

    async def close(self) -> None:
        await self.calibration.wait_idle()
        await self.db.close()


def build_hunter(settings: Settings, schema: ListingSchema | None = None) -> ListingHunter:
    pipeline_config = PipelineConfig(
        source_name=settings.source_name,
        source_tools=tuple(settings.source_tools),
        enrichment_prompt=settings.enrichment_prompt,
        hydrate_concurrency=settings.hydrate_concurrency,
        enrich_concurrency=settings.enrich_concurrency,
        rate_concurrency=settings.rate_concurrency,
        backlog_batch_size=settings.backlog_batch_size,
    )
    if not settings.collaborator_base_url:
        logger.info("LH_COLLABORATOR_BASE_URL not set; pipeline and calibration are disabled")
        return ListingHunter(
            database_path=settings.database_path,
            pipeline_config=pipeline_config,
            schema=schema,
            calibration_threshold=settings.calibration_threshold,
        )

    remote = RemoteCollaborators(
        base_url=settings.collaborator_base_url,
        api_key=settings.collaborator_api_key,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )
    return ListingHunter(
        database_path=settings.database_path,
        pipeline_config=pipeline_config,
        schema=schema,
        discover=remote.discover,
        hydrate=remote.hydrate,
        enrich=remote.enrich,
        rate=remote.rate,
        calibrate=remote.calibrate,
        calibration_threshold=settings.calibration_threshold,
    )


@lru_cache
def get_hunter() -> ListingHunter:
    return build_hunter(get_settings())
