from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "address-resolver-api"
    environment: str = "dev"

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    store_backend: Literal["postgres", "memory"] = "postgres"

    pipeline_timeout_seconds: float = 120.0
    http_timeout_seconds: float = 30.0
    registry_endpoint: str = "https://landregistry.data.gov.uk/landregistry/query"
    registry_timeout_seconds: float = 45.0
    partner_base_url: str | None = None
    partner_user_email: str | None = None
    listing_base_url: str = "https://www.rightmove.co.uk"
    listing_timeout_seconds: float = 60.0
    user_agent: str = "address-resolver/1.0"

    batch_chunk_size: int = 50
    batch_max_identifiers: int = 10000
    batch_chunk_stagger_seconds: float = 1.0
    chunk_concurrency: int = 3
    chunk_lease_seconds: int = 900
    progress_ttl_seconds: int = 86400
    results_ttl_seconds: int = 3600

    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_batch_size: int = 1
    chunk_heartbeat_seconds: float = 60.0
    chunk_max_attempts: int = 5
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100

    pool_worker_count: int = 4
    resolve_batch_max_items: int = 100
    backfill_page_size: int = 1000

    otel_enabled: bool = True
    otel_service_name: str = "address-resolver"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
