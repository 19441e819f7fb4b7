from __future__ import annotations

import asyncio
import logging

from opentelemetry import trace

from listing_hunter.schemas.listings import Listing
from listing_hunter.services.collaborators import CalibrateFn
from listing_hunter.services.repository import DocumentRepository, RatingOverrideRepository, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CALIBRATION_THRESHOLD = 5


class CalibrationError(Exception):
    """Raised when calibration cannot run or produces an unusable log."""


class CalibrationLoop:
    """Turns AI/user rating disagreements into a rewritten calibration log.

    Holds a single in-flight slot: while a synthesis task occupies it, new
    triggers are observed but start nothing. The slot clears when the task
    finishes, whether it succeeded or failed.
    """

    def __init__(
        self,
        *,
        documents: DocumentRepository,
        rating_overrides: RatingOverrideRepository,
        calibrate: CalibrateFn | None,
        threshold: int = DEFAULT_CALIBRATION_THRESHOLD,
    ) -> None:
        self.documents = documents
        self.rating_overrides = rating_overrides
        self.calibrate = calibrate
        self.threshold = max(1, threshold)
        self._in_flight: asyncio.Task[str | None] | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    async def record_rating(self, previous: Listing, user_rating: int, user_note: str | None = None) -> bool:
        """Log an override when the user disagrees with a prior AI rating.

        Returns True only when this call started a calibration run.
        """
        if previous.ai_rating is None or previous.ai_rating == user_rating:
            return False

        await self.rating_overrides.insert(
            listing_id=previous.id,
            ai_rating=previous.ai_rating,
            user_rating=user_rating,
            user_note=user_note,
        )
        try:
            return await self.maybe_trigger()
        except RepositoryError:
            logger.exception("calibration trigger check failed for listing_id=%s", previous.id)
            return False

    async def maybe_trigger(self) -> bool:
        calibrate = self.calibrate
        if calibrate is None:
            return False

        pending = await self.pending_overrides()
        if pending < self.threshold:
            return False
        if self._in_flight is not None:
            logger.info("calibration already running; pending overrides=%s", pending)
            return False

        self._start(calibrate)
        logger.info("calibration triggered; pending overrides=%s", pending)
        return True

    async def pending_overrides(self) -> int:
        document = await self.documents.get("calibration_log")
        return await self.rating_overrides.count_since(document.updated_at if document else None)

    async def run(self) -> str | None:
        """Run calibration now, or join the run already in flight.

        Returns the new calibration log, or None when nothing was written.
        """
        calibrate = self.calibrate
        if calibrate is None:
            raise CalibrationError("no calibrate collaborator configured")
        task = self._in_flight or self._start(calibrate)
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        task = self._in_flight
        if task is not None:
            await asyncio.wait({task})

    def _start(self, calibrate: CalibrateFn) -> asyncio.Task[str | None]:
        task = asyncio.create_task(self._run(calibrate), name="calibration")
        self._in_flight = task
        task.add_done_callback(self._release)
        return task

    def _release(self, task: asyncio.Task[str | None]) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _run(self, calibrate: CalibrateFn) -> str | None:
        with tracer.start_as_current_span("calibration.run"):
            try:
                return await self._synthesize(calibrate)
            except Exception:
                logger.exception("calibration run failed")
                return None

    async def _synthesize(self, calibrate: CalibrateFn) -> str | None:
        current = await self.documents.get("calibration_log")
        overrides = await self.rating_overrides.list_since(current.updated_at if current else None)
        if not overrides:
            logger.info("no new rating overrides; calibration log unchanged")
            return None

        preference_profile = await self.documents.get_content("preference_profile")
        calibration_log = (
            await calibrate(overrides, current.content if current else None, preference_profile)
        ).strip()
        if not calibration_log:
            raise CalibrationError("calibration returned empty output")

        await self.documents.set("calibration_log", calibration_log)
        logger.info("calibration log rewritten from %s overrides", len(overrides))
        return calibration_log
