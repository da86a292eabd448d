from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    api_key: str = "local-worker-key"
    request_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    due_batch_size: int = 5
    cleanup_interval_seconds: float = 3600.0
    scheduled_sync_interval_seconds: float = 0.0
    otel_enabled: bool = True
    otel_service_name: str = "kindsync-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="KS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
