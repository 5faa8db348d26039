"""Service configuration pulled from environment variables via pydantic."""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.logging_utils import get_tagged_logger
logger = get_tagged_logger(__name__, tag="config")


class Settings(BaseSettings):
    """Environment-driven configuration for the skillboard service."""
    model_config = SettingsConfigDict(env_prefix="SKILLBOARD_", extra="ignore")

    # location (Edmonton International Airport by default)
    station_id: str = "CYEG"
    latitude: float = 53.30936
    longitude: float = -113.59532

    # storage
    store_backend: str = "sql"  # options: sql, memory
    database_url: str = "sqlite:///./skillboard.db"
    retention_days: int = 730

    # upstream sources
    forecast_source: str = "open_meteo"  # options: open_meteo
    checkwx_api_key: str | None = None
    http_cache_seconds: int = 600
    http_retries: int = 3
    http_backoff_factor: float = 1.0
    http_timeout_seconds: float = 20.0
    min_report_count: int = 20
    min_series_length: int = 24
    fetch_batch_size: int = 4
    fetch_batch_pause_seconds: float = 1.0

    # ground truth
    lookback_hours: int = 48

    # processing windows
    synthetic_window_days: int = 10
    synthetic_chunk_hours: int = 2
    verification_chunk_hours: int = 6
    backfill_pause_seconds: float = 0.05

    # scoring
    bucket_inclusivity: str = "half_open"  # options: half_open, closed
    missing_variable_policy: str = "no_penalty"  # options: no_penalty, fixed_penalty

    # HTTP surface
    api_key: str | None = None
    api_key_redis_url: str | None = None
    api_key_redis_set: str = "skillboard_api_keys"
    backfill_on_startup: bool = True

    @field_validator("station_id", mode="after")
    @classmethod
    def upper_station(cls, v: str) -> str:
        """ICAO identifiers are upper case."""
        return v.strip().upper()

    @field_validator("store_backend", "forecast_source", "bucket_inclusivity", "missing_variable_policy",
                     mode="after")
    @classmethod
    def lower_choice(cls, v: str) -> str:
        """Normalize option strings so env values are case-insensitive."""
        return v.strip().lower()

    @field_validator("fetch_batch_size", "lookback_hours", "synthetic_chunk_hours",
                     "verification_chunk_hours", mode="after")
    @classmethod
    def positive(cls, v: int) -> int:
        """Window and batch sizes must be at least one."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


settings = Settings()


if __name__ == "__main__":
    logger.setLevel("DEBUG")
    logger.debug(f"Loaded settings: {settings.model_dump_json(indent=4)}")
