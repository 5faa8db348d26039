"""Upstream data sources: model forecasts, station reports, reanalysis and TAF."""

from .base import CallableWeatherDataSource, WeatherDataSource
from .factory import build_data_source
from .metar_client import StationFetchResult, fetch_station_reports, fetch_taf
from .open_meteo_client import ModelFetchResult, fetch_model_forecast, fetch_reanalysis

__all__ = [
    "build_data_source",
    "WeatherDataSource",
    "CallableWeatherDataSource",
    "ModelFetchResult",
    "StationFetchResult",
    "fetch_model_forecast",
    "fetch_reanalysis",
    "fetch_station_reports",
    "fetch_taf",
]
