from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "listing-hunter"
    environment: str = "dev"
    database_path: str = "data/listing-hunter.sqlite"
    source_name: str = "default"
    source_tools: list[str] = Field(default_factory=list)
    enrichment_prompt: str | None = None
    hydrate_concurrency: int = 5
    enrich_concurrency: int = 3
    rate_concurrency: int = 10
    backlog_batch_size: int = 50
    calibration_threshold: int = 5
    collaborator_base_url: str | None = None
    collaborator_api_key: str | None = None
    collaborator_timeout_seconds: float = 60.0
    pipeline_interval_seconds: float = 3600.0
    max_backoff_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "listing-hunter"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LH_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
