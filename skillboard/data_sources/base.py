"""Interfaces and helpers for upstream weather data sources."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from skillboard.data_sources.metar_client import StationFetchResult
from skillboard.data_sources.open_meteo_client import ModelFetchResult
from skillboard.domain import ModelConfig


class WeatherDataSource(Protocol):
    """Interface for anything that can provide forecasts and ground truth."""

    def fetch_model_forecast(self, config: ModelConfig) -> ModelFetchResult:
        """Return an accepted forecast payload for one model."""
        ...

    def fetch_station_reports(self) -> StationFetchResult:
        """Return raw station reports for the configured station."""
        ...

    def fetch_reanalysis(self) -> Dict[int, Dict[str, Optional[float]]]:
        """Return supplementary reanalysis amounts keyed by hour."""
        ...

    def fetch_taf(self) -> Optional[str]:
        """Return the current terminal forecast text."""
        ...


@dataclass
class CallableWeatherDataSource(WeatherDataSource):
    """Wrap four callables so they can be swapped for different backends or fakes."""

    model_forecast: Callable[[ModelConfig], ModelFetchResult]
    station_reports: Callable[[], StationFetchResult]
    reanalysis: Callable[[], Dict[int, Dict[str, Optional[float]]]]
    taf: Callable[[], Optional[str]]

    def fetch_model_forecast(self, config: ModelConfig) -> ModelFetchResult:
        """Delegate to the configured forecast callable."""
        return self.model_forecast(config)

    def fetch_station_reports(self) -> StationFetchResult:
        """Delegate to the configured station-report callable."""
        return self.station_reports()

    def fetch_reanalysis(self) -> Dict[int, Dict[str, Optional[float]]]:
        """Delegate to the configured reanalysis callable."""
        return self.reanalysis()

    def fetch_taf(self) -> Optional[str]:
        """Delegate to the configured TAF callable."""
        return self.taf()
