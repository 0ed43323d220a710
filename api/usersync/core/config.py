from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "a1c-user-sync-api"
    environment: str = "dev"
    log_level: str = "INFO"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    clerk_webhook_secret: str | None = None
    job_max_retries: int = Field(default=3, ge=0)
    job_default_priority: int = 1
    job_retry_base_seconds: int = Field(default=0, ge=0)
    job_retry_max_seconds: int = Field(default=3600, ge=0)
    job_stale_processing_seconds: int = 900
    processor_module_id: str = "local-processor"
    processor_api_key_hash: str | None = None
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    identity_timeout_seconds: float = 10.0
    identity_page_size: int = Field(default=200, ge=1, le=1000)
    otel_enabled: bool = True
    otel_service_name: str = "a1c-user-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="US_", extra="ignore")

    @field_validator("clerk_webhook_secret", "processor_api_key_hash", "supabase_url", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("processor_api_key_hash")
    @classmethod
    def _normalise_key_hash(cls, value: str | None) -> str | None:
        return value.lower() if value else value


@lru_cache
def get_settings() -> Settings:
    return Settings()
