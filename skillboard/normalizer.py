"""Turn one provider's hourly payload into canonical Forecast records.

Providers are inconsistent about field names: a multi-model request returns
`temperature_2m_ecmwf_ifs025`, a single-model one plain `temperature_2m`.
`resolve_field` hides that behind one lookup order (exact, model suffix, then
prefix) and returns None instead of raising when nothing usable is found.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from skillboard.models import FORECAST_VARIABLES, Forecast, finite_or_none, floor_hour, parse_utc
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="normalizer")

PRIMARY_VARIABLE = "temperature_2m"
DERIVED_ZERO_FIELDS = ("rain", "showers", "snowfall")


@dataclass
class NormalizationResult:
    """Forecasts produced from one payload plus what was dropped on the way."""
    forecasts: List[Forecast] = field(default_factory=list)
    dropped_before_issue: int = 0
    dropped_missing_primary: int = 0
    dropped_invalid_time: int = 0


def _shadowed_by_longer_name(key: str, name: str) -> bool:
    """True when `key` belongs to a different, longer variable (cloud_cover vs cloud_cover_low)."""
    for other in FORECAST_VARIABLES:
        if other != name and len(other) > len(name) and (key == other or key.startswith(other + "_")):
            return True
    return False


def _candidate_keys(hourly: Mapping[str, Any], name: str, api_model: Optional[str]) -> List[str]:
    keys = [name]
    if api_model:
        keys.append(f"{name}_{api_model}")
    prefix = name + "_"
    for key in hourly:
        if key.startswith(prefix) and key not in keys and not _shadowed_by_longer_name(key, name):
            keys.append(key)
            break
    return keys


def resolve_field(
    hourly: Mapping[str, Any],
    name: str,
    index: int,
    api_model: Optional[str] = None,
) -> Optional[float]:
    """Return the value of `name` at `index`, or None when absent or non-finite."""
    for key in _candidate_keys(hourly, name, api_model):
        series = hourly.get(key)
        if not isinstance(series, (list, tuple)) or index >= len(series):
            continue
        value = series[index]
        if value is not None:
            return finite_or_none(value)
    return None


def has_primary_data(payload: Mapping[str, Any]) -> bool:
    """True when the payload carries at least one non-null primary temperature."""
    hourly = (payload or {}).get("hourly") or {}
    for key, series in hourly.items():
        if key != PRIMARY_VARIABLE and not key.startswith(PRIMARY_VARIABLE + "_"):
            continue
        if isinstance(series, (list, tuple)) and any(v is not None for v in series):
            return True
    return False


def normalize_forecast(
    model_id: str,
    payload: Mapping[str, Any],
    issue_time: int,
    api_model: Optional[str] = None,
) -> NormalizationResult:
    """Build Forecast records for every usable hour of `payload`.

    Every record shares the hour-aligned `issue_time`. Hours before it, and
    hours without the primary temperature, are dropped and counted.
    """
    issue_time = floor_hour(issue_time)
    hourly = (payload or {}).get("hourly") or {}
    times = hourly.get("time") or []
    result = NormalizationResult()

    for i, raw_time in enumerate(times):
        valid_time = parse_utc(raw_time)
        if valid_time is None:
            result.dropped_invalid_time += 1
            continue
        valid_time = floor_hour(valid_time)
        if valid_time < issue_time:
            result.dropped_before_issue += 1
            continue

        values = {name: resolve_field(hourly, name, i, api_model) for name in FORECAST_VARIABLES}
        if values[PRIMARY_VARIABLE] is None:
            result.dropped_missing_primary += 1
            continue

        if values["precipitation"] == 0:
            for name in DERIVED_ZERO_FIELDS:
                if values[name] is None:
                    values[name] = 0.0

        result.forecasts.append(
            Forecast(model_id=model_id, issue_time=issue_time, valid_time=valid_time, **values)
        )

    logger.debug(
        "Normalized forecast payload",
        extra={
            "model_id": model_id,
            "stored": len(result.forecasts),
            "dropped_before_issue": result.dropped_before_issue,
            "dropped_missing_primary": result.dropped_missing_primary,
        },
    )
    return result
