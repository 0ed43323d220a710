from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-processor"
    api_key: str = "local-processor-key"
    request_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    process_batch_size: int = 10
    max_batches_per_cycle: int = 10
    retry_sweep_interval_seconds: float = 300.0
    retry_sweep_batch_size: int = 1000
    stale_sweep_interval_seconds: float = 60.0
    stale_sweep_batch_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "a1c-user-sync-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="US_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
