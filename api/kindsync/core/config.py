from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "kindsync-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    operator_api_key: str | None = None
    worker_api_key: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    # Import pipeline
    batch_size: int = 0
    batch_delay_seconds: int = 2
    step_lease_seconds: int = 300
    job_retention_days: int = 7
    auto_import_sources: list[str] = Field(default_factory=list)
    sync_start_dates: dict[str, str] = Field(default_factory=dict)
    listen_embed_source: str = "none"

    # Webhooks
    webhook_auto_post: bool = False
    webhook_post_status: str = "publish"
    webhook_tokens: dict[str, str] = Field(default_factory=dict)
    webhook_hmac_secrets: dict[str, str] = Field(default_factory=dict)
    webhook_basic_credentials: dict[str, str] = Field(default_factory=dict)
    plex_url: str | None = None
    plex_token: str | None = None

    # Source credentials
    http_timeout_seconds: float = 15.0
    listenbrainz_token: str | None = None
    listenbrainz_username: str | None = None
    lastfm_api_key: str | None = None
    lastfm_username: str | None = None
    trakt_client_id: str | None = None
    trakt_access_token: str | None = None
    simkl_client_id: str | None = None
    simkl_access_token: str | None = None
    hardcover_api_token: str | None = None
    readwise_access_token: str | None = None
    foursquare_access_token: str | None = None

    otel_enabled: bool = True
    otel_service_name: str = "kindsync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="KS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
