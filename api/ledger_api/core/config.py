from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "violation-ledger-api"
    environment: str = "dev"
    actor_header: str = "X-Actor-Id"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    report_max_attempts: int = 3
    report_retry_delay_minutes: int = 30
    report_stuck_after_minutes: int = 5
    extraction_api_key: str | None = None
    extraction_base_url: str = "https://api.anthropic.com"
    extraction_model: str | None = None
    extraction_api_version: str = "2023-06-01"
    extraction_max_tokens: int = 4096
    extraction_timeout_seconds: float = 60.0
    geocoding_api_key: str | None = None
    geocoding_base_url: str = "https://maps.googleapis.com/maps/api/geocode/json"
    geocoding_timeout_seconds: float = 10.0
    geocoding_cache_ttl_days: int = 90
    geocoding_region_name: str = "Syria"
    geocoding_region_code: str = "SY"
    # west, south, east, north
    geocoding_region_bounds: tuple[float, float, float, float] = (35.727222, 32.310939, 42.385029, 37.319831)
    languages: tuple[str, ...] = ("en", "ar")
    dedupe_similarity_threshold: float = 0.75
    dedupe_report_similarity_threshold: float = 0.85
    dedupe_max_distance_meters: float = 100.0
    dedupe_casualty_tolerance_ratio: float = 0.2
    dedupe_casualty_min_slack: int = 1
    dedupe_candidate_window_days: int = 1
    dedupe_candidate_limit: int = 5
    dedupe_merge_retry_attempts: int = 3
    dedupe_merge_retry_backoff_seconds: float = 0.1
    dedupe_key_coordinate_precision: int = 3
    otel_enabled: bool = True
    otel_service_name: str = "violation-ledger-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="VL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
