from typing import Literal

from pydantic import BaseModel

PipelineRunStatus = Literal["running", "completed", "failed"]


class PipelineRunStats(BaseModel):
    discovered: int = 0
    duplicates: int = 0
    new: int = 0
    enriched: int = 0
    rated: int = 0
    backfilled_enrichment: int = 0
    re_rated: int = 0
    rejected: int = 0
    hydrate_failures: int = 0
    enrich_failures: int = 0
    rate_failures: int = 0


class PipelineRunRecord(BaseModel):
    id: str
    started_at: str
    completed_at: str | None = None
    status: PipelineRunStatus
    stats: PipelineRunStats
    error: str | None = None


class PipelineRunResult(BaseModel):
    run_id: str
    stats: PipelineRunStats


class CalibrationResult(BaseModel):
    updated: bool
    calibration_log: str | None = None
