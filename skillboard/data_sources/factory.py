"""Factory helpers for choosing the upstream data source at startup."""

from __future__ import annotations

from functools import partial

from skillboard import config
from skillboard.data_sources import metar_client, open_meteo_client
from skillboard.data_sources.base import CallableWeatherDataSource, WeatherDataSource
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="data_sources/factory")


DEFAULT_SOURCE_NAME = "open_meteo"


def build_data_source(settings: config.Settings | None = None) -> WeatherDataSource:
    """Instantiate the configured data source with location and limits bound in."""
    settings = settings or config.settings
    source = (settings.forecast_source or DEFAULT_SOURCE_NAME).lower()

    if source == "open_meteo":
        logger.info(
            "Using Open-Meteo forecasts with station reports",
            extra={"station": settings.station_id, "checkwx": bool(settings.checkwx_api_key)},
        )
        return CallableWeatherDataSource(
            model_forecast=partial(
                open_meteo_client.fetch_model_forecast,
                latitude=settings.latitude,
                longitude=settings.longitude,
                min_series_length=settings.min_series_length,
                timeout=settings.http_timeout_seconds,
            ),
            station_reports=partial(
                metar_client.fetch_station_reports,
                settings.station_id,
                api_key=settings.checkwx_api_key,
                hours=settings.lookback_hours,
                min_count=settings.min_report_count,
                timeout=settings.http_timeout_seconds,
            ),
            reanalysis=partial(
                open_meteo_client.fetch_reanalysis,
                settings.latitude,
                settings.longitude,
                timeout=settings.http_timeout_seconds,
            ),
            taf=partial(
                metar_client.fetch_taf,
                settings.station_id,
                api_key=settings.checkwx_api_key,
                timeout=settings.http_timeout_seconds,
            ),
        )

    raise ValueError(f"Unknown forecast source '{source}'")
