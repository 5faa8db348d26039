"""Helpers for fetching model forecasts and reanalysis from the Open-Meteo APIs."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from skillboard.config import settings
from skillboard.data_sources.http_client import build_session, get_json
from skillboard.domain import BASE_VARS, FULL_VARS, LIMITED_VARS, MINIMAL_VARS, ModelConfig
from skillboard.errors import DataQualityError, UpstreamFetchError
from skillboard.models import HOUR_MS, finite_or_none, now_ms, parse_utc
from skillboard.normalizer import has_primary_data
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="open_meteo_client")

session = build_session(
    "skillboard_open_meteo_cache",
    expire_after=settings.http_cache_seconds,
    retries=settings.http_retries,
    backoff_factor=settings.http_backoff_factor,
)

OPEN_METEO_BASE_URL = "https://api.open-meteo.com/v1"
OPEN_METEO_ENSEMBLE_URL = "https://ensemble-api.open-meteo.com/v1/ensemble"
OPEN_METEO_FORECAST_URL = f"{OPEN_METEO_BASE_URL}/forecast"

REANALYSIS_VARS = (
    "temperature_2m,dew_point_2m,pressure_msl,precipitation,rain,snowfall,"
    "wind_speed_10m,wind_direction_10m,wind_gusts_10m,weather_code"
)

EXPECTED_UNITS = {
    "temperature_2m": "°C",
    "dew_point_2m": "°C",
    "wind_speed_10m": "km/h",
    "wind_gusts_10m": "km/h",
    "wind_direction_10m": "°",
    "pressure_msl": "hPa",
    "visibility": "m",
    "precipitation": "mm",
    "rain": "mm",
    "showers": "mm",
    "snowfall": "cm",
    "precipitation_probability": "%",
}

# Acceptable alternative spellings that should not trigger warnings.
ALLOWED_UNIT_SYNONYMS = {
    "wind_direction_10m": {"°", "deg", "degrees"},
    "precipitation_probability": {"%", "percent"},
    "visibility": {"m", "meters", "metres"},
}


@dataclass
class FetchLayer:
    """One endpoint/parameter combination tried for a model."""
    name: str
    vars: str
    model: Optional[str]


@dataclass
class ModelFetchResult:
    """Accepted payload for one model and the layer that produced it."""
    model_id: str
    payload: Dict[str, Any]
    api_model: Optional[str]
    layer: str


def _warn_on_unexpected_units(units: dict, *, context: str):
    """Log a warning if Open-Meteo returns units we did not request/expect."""
    if not units:
        return
    for field, expected in EXPECTED_UNITS.items():
        actual = units.get(field)
        if not actual or actual == expected:
            continue
        if actual not in ALLOWED_UNIT_SYNONYMS.get(field, set()):
            logger.warning(
                "Unexpected Open-Meteo unit",
                extra={"context": context, "field": field, "unit": actual, "expected": expected},
            )


def model_variants(api_model: Optional[str]) -> List[str]:
    """Alternate spellings of a model name that Open-Meteo has accepted over time."""
    if not api_model:
        return ["default"]
    variants = [api_model]
    if "_global" in api_model:
        variants.append(api_model.replace("_global", "_seamless"))
    if "seamless" not in api_model:
        variants.append(f"{api_model.split('_')[0]}_seamless")
    if re.search(r"\d{2,3}$", api_model):
        variants.append(re.sub(r"\d{2,3}$", "", api_model))
    if "025" in api_model:
        variants.append(api_model.replace("025", "_025"))
    if "04" in api_model:
        variants.append(api_model.replace("04", "_04").replace("ifs_04", "ifs04"))
    return list(dict.fromkeys(variants))


def fetch_layers(config: ModelConfig) -> List[FetchLayer]:
    """Fallback layers in priority order for one model."""
    variants = model_variants(config.api_model)

    def _variant(i: int) -> Optional[str]:
        v = variants[i] if len(variants) > i else None
        return None if v == "default" else v

    return [
        FetchLayer(f"{config.api_model or 'default'} + configured vars", config.vars or FULL_VARS, config.api_model),
        FetchLayer(f"{config.api_model or 'default'} + base vars", BASE_VARS, config.api_model),
        FetchLayer("variant + limited vars", LIMITED_VARS, _variant(1) or config.api_model),
        FetchLayer("provider default + base vars", BASE_VARS, None),
        FetchLayer("alternate variant + minimal vars", MINIMAL_VARS, _variant(2) or _variant(0)),
    ]


def build_request(
    config: ModelConfig,
    layer: FetchLayer,
    *,
    latitude: float,
    longitude: float,
    past_days: int = 2,
) -> Tuple[str, Dict[str, Any]]:
    """Return (url, params) for one layer of one model."""
    params: Dict[str, Any] = {
        "latitude": latitude,
        "longitude": longitude,
        "hourly": layer.vars,
        "timezone": "UTC",
        "forecast_days": config.days,
        "past_days": past_days,
        "wind_speed_unit": "kmh",
        "precipitation_unit": "mm",
    }
    if layer.model:
        params["models"] = layer.model
    if config.provider == "ensemble":
        return OPEN_METEO_ENSEMBLE_URL, params
    return f"{OPEN_METEO_BASE_URL}/{config.provider}", params


def _validate_payload(data: Any, *, min_series_length: int) -> Dict[str, Any]:
    if not isinstance(data, dict) or not isinstance((data.get("hourly") or {}).get("time"), list):
        raise DataQualityError("response has no hourly time series")
    if not has_primary_data(data):
        raise DataQualityError("primary variable is null for every hour")
    if len(data["hourly"]["time"]) <= min_series_length:
        raise DataQualityError(f"series too short ({len(data['hourly']['time'])} hours)")
    return data


def fetch_model_forecast(
    config: ModelConfig,
    *,
    latitude: float,
    longitude: float,
    min_series_length: int = 24,
    timeout: float = 20.0,
) -> ModelFetchResult:
    """Walk the fallback layers for `config` until one yields a usable payload.

    Raises UpstreamFetchError (not retryable) once every layer has failed.
    """
    failures: List[str] = []
    for layer in fetch_layers(config):
        url, params = build_request(config, layer, latitude=latitude, longitude=longitude)
        logger.debug(
            "Trying forecast layer",
            extra={"model_id": config.id, "layer": layer.name, "api_model": layer.model or "default"},
        )
        try:
            data = _validate_payload(get_json(session, url, params=params, timeout=timeout),
                                     min_series_length=min_series_length)
        except (UpstreamFetchError, DataQualityError) as exc:
            failures.append(f"{layer.name}: {exc}")
            logger.info("Forecast layer rejected", extra={"model_id": config.id, "layer": layer.name, "error": str(exc)})
            continue
        _warn_on_unexpected_units(data.get("hourly_units") or {}, context=config.id)
        logger.info(
            "Forecast layer accepted",
            extra={"model_id": config.id, "layer": layer.name, "hours": len(data["hourly"]["time"])},
        )
        return ModelFetchResult(model_id=config.id, payload=data, api_model=layer.model, layer=layer.name)

    raise UpstreamFetchError(f"{config.id}: all forecast layers failed ({'; '.join(failures)})", retryable=False)


def fetch_reanalysis(
    latitude: float,
    longitude: float,
    *,
    past_days: int = 3,
    timeout: float = 20.0,
    now: Optional[int] = None,
) -> Dict[int, Dict[str, Optional[float]]]:
    """Fetch the analysis series used to supplement precipitation amounts.

    Returns `{hour_ms: {era_precip_amt, era_rain_amt, era_snow_amt, era_wind_gust}}`
    for hours up to one hour past `now`.
    """
    params = {
        "latitude": latitude,
        "longitude": longitude,
        "past_days": past_days,
        "forecast_days": 2,
        "hourly": REANALYSIS_VARS,
        "timezone": "UTC",
        "wind_speed_unit": "kmh",
        "precipitation_unit": "mm",
    }
    data = get_json(session, OPEN_METEO_FORECAST_URL, params=params, timeout=timeout)
    hourly = (data or {}).get("hourly") or {}
    times = hourly.get("time") or []
    horizon = (now if now is not None else now_ms()) + HOUR_MS

    def _at(name: str, i: int) -> Optional[float]:
        series = hourly.get(name) or []
        return finite_or_none(series[i]) if i < len(series) else None

    out: Dict[int, Dict[str, Optional[float]]] = {}
    for i, raw in enumerate(times):
        t = parse_utc(raw)
        if t is None or t > horizon:
            continue
        out[t] = {
            "era_precip_amt": _at("precipitation", i),
            "era_rain_amt": _at("rain", i),
            "era_snow_amt": _at("snowfall", i),
            "era_wind_gust": _at("wind_gusts_10m", i),
        }
    logger.info("Fetched reanalysis", extra={"hours": len(out)})
    return out
