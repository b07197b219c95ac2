from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "dealflow-api"
    environment: str = "dev"
    worker_id: str = "local-worker"

    state_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    provider_base_url: str = "https://api.keepa.com"
    provider_api_key: str | None = None
    provider_domain: int = 8
    provider_timeout_seconds: float = 30.0
    provider_history_days: int = 90
    provider_max_offers: int = 5

    publisher_base_url: str = "http://localhost:8100"
    publisher_api_key: str | None = None
    publisher_timeout_seconds: float = 10.0

    token_capacity: int = 300
    token_refill_per_minute: float = 20.0
    job_token_cost: int = 15
    provider_token_sync: bool = True

    claim_lease_seconds: int = 120
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600

    scheduler_interval_seconds: float = 60.0
    worker_tick_seconds: float = 5.0
    max_jobs_per_tick: int = 10
    lease_reaper_batch_size: int = 100
    due_rules_batch_size: int = 1000
    max_backoff_seconds: float = 60.0

    dedup_ttl_seconds: int = 86400
    cache_fresh_seconds: int = 1800
    rule_run_jitter_ratio: float = 0.1

    admin_api_key: str | None = None

    otel_enabled: bool = True
    otel_service_name: str = "dealflow"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DF_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
