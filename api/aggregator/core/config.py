from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "fanout-aggregator-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    record_store_backend: Literal["postgres", "memory"] = "postgres"
    search_timeout_seconds: float = 120.0
    feed_timeout_seconds: float = 30.0
    feed_lookback_hours: float = 72.0
    provider_catalog_json: str | None = None
    provider_descriptor_urls: str | None = None
    provider_descriptor_timeout_seconds: float = 10.0
    shutdown_drain_timeout_seconds: float = 5.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "fanout-aggregator-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AGG_", extra="ignore")

    def descriptor_urls(self) -> list[str]:
        if not self.provider_descriptor_urls:
            return []
        return [chunk.strip() for chunk in self.provider_descriptor_urls.split(",") if chunk.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
