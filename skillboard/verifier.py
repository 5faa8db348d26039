"""Pair forecasts with observations and compute per-variable errors.

Each catalogue variable in `domain.VERIFICATION_VARIABLES` has a kind that
decides how the two sides are compared:

* scalar: plain difference, percentage error when the observation is non-zero
* angular: wrap-aware difference in (-180, 180], skipped for calm or VRB wind
* vector: Euclidean distance between (u, v) wind vectors, stored in every error field
* brier: squared probability error against "any station phenomenon"
* occurrence: yes/no from weather codes or amounts vs station codes, error in {0, 1}
* amount: reanalysis amount when the station saw the phenomenon, else 0

A check that cannot be made (missing side, ambiguous hour) is skipped, never
recorded as zero error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

from skillboard.domain import (
    AMOUNT_PHENOMENA,
    FREEZING_CODES,
    OCCURRENCE_AMOUNT_THRESHOLD,
    PHENOMENON_FREEZING_RAIN,
    PHENOMENON_RAIN,
    PHENOMENON_SNOW,
    RAIN_CODES,
    SNOW_CODES,
    VERIFICATION_VARIABLES,
    VariableKind,
    VariableSpec,
)
from skillboard.ensemble import angular_difference
from skillboard.models import HOUR_MS, Forecast, Observation, VerificationRecord, day_of, finite_or_none
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="verifier")

# Observed fields tried in order for scalars with more than one ground-truth source.
OBSERVED_FIELD_PREFERENCE: Dict[str, tuple] = {
    "precipitation": ("era_precip_amt", "precip_1h"),
}


@dataclass
class VerificationRun:
    """Outcome of one verification sweep."""
    records: int = 0
    days: Set[str] = field(default_factory=set)
    skipped_negative_lead: int = 0


def _record(
    forecast: Forecast,
    variable: str,
    forecast_value: float,
    observed_value: float,
    *,
    error: float,
    absolute_error: float,
    squared_error: float,
    bias: float,
    percentage_error: Optional[float] = None,
) -> VerificationRecord:
    return VerificationRecord(
        model_id=forecast.model_id,
        variable=variable,
        valid_time=forecast.valid_time,
        issue_time=forecast.issue_time,
        lead_time_hours=forecast.lead_time_hours,
        forecast_value=forecast_value,
        observed_value=observed_value,
        error=error,
        absolute_error=absolute_error,
        squared_error=squared_error,
        percentage_error=percentage_error,
        bias=bias,
    )


def _difference_record(forecast: Forecast, variable: str, f: float, o: float) -> VerificationRecord:
    e = f - o
    pct = abs(e) / abs(o) * 100.0 if o != 0 else None
    return _record(forecast, variable, f, o, error=e, absolute_error=abs(e), squared_error=e * e,
                   bias=e, percentage_error=pct)


def _probability_record(forecast: Forecast, variable: str, p: float, o: float,
                        forecast_value: float, observed_value: float) -> VerificationRecord:
    # error, absolute and squared error are all (p - o)^2; bias keeps the sign.
    d = p - o
    sq = d * d
    return _record(forecast, variable, forecast_value, observed_value, error=sq,
                   absolute_error=sq, squared_error=sq, bias=d)


def _observed_scalar(spec: VariableSpec, obs: Observation) -> Optional[float]:
    for name in OBSERVED_FIELD_PREFERENCE.get(spec.name, (spec.obs_field,)):
        v = finite_or_none(getattr(obs, name, None))
        if v is not None:
            return v
    return None


def verify_scalar(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    f = finite_or_none(forecast.value(spec.name))
    o = _observed_scalar(spec, obs)
    if f is None or o is None:
        return None
    return _difference_record(forecast, spec.name, f, o)


def verify_angular(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    if obs.wind_variable or finite_or_none(obs.wind_speed) == 0:
        return None
    f = finite_or_none(forecast.value(spec.name))
    o = finite_or_none(obs.wind_dir)
    if f is None or o is None:
        return None
    e = angular_difference(f, o)
    return _record(forecast, spec.name, f, o, error=e, absolute_error=abs(e), squared_error=e * e, bias=e)


def wind_components(speed: float, direction: Optional[float]) -> Optional[tuple]:
    """Meteorological (u, v) for a wind blowing *from* `direction`; None when undefined."""
    if direction is None:
        return (0.0, 0.0) if speed == 0 else None
    rad = math.radians(direction)
    return -speed * math.sin(rad), -speed * math.cos(rad)


def verify_vector(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    fs = finite_or_none(forecast.wind_speed_10m)
    os_ = finite_or_none(obs.wind_speed)
    if fs is None or os_ is None:
        return None
    fv = wind_components(fs, finite_or_none(forecast.wind_direction_10m))
    ov = wind_components(os_, finite_or_none(obs.wind_dir))
    if fv is None or ov is None:
        return None
    d = math.hypot(fv[0] - ov[0], fv[1] - ov[1])
    return _record(forecast, spec.name, fs, os_, error=d, absolute_error=d, squared_error=d, bias=d)


def verify_brier(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    prob = finite_or_none(forecast.value(spec.name))
    if prob is None:
        return None
    p = min(max(prob / 100.0, 0.0), 1.0)
    o = 1.0 if obs.weather_codes else 0.0
    return _probability_record(forecast, spec.name, p, o, prob, o * 100.0)


def _sum_present(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return sum(present) if present else None


def _weather_code(forecast: Forecast) -> Optional[int]:
    code = finite_or_none(forecast.weather_code)
    return int(round(code)) if code is not None else None


def predicted_occurrence(phenomenon: str, forecast: Forecast) -> Optional[bool]:
    """Whether the forecast calls for the phenomenon; None when it carries no evidence either way."""
    code = _weather_code(forecast)
    if phenomenon == PHENOMENON_RAIN:
        amount = _sum_present(finite_or_none(forecast.rain), finite_or_none(forecast.showers))
        codes = RAIN_CODES
    elif phenomenon == PHENOMENON_SNOW:
        amount = finite_or_none(forecast.snowfall)
        codes = SNOW_CODES
    else:
        amount = None
        codes = FREEZING_CODES
    if code is None and amount is None:
        return None
    return (code is not None and code in codes) or (amount is not None and amount > OCCURRENCE_AMOUNT_THRESHOLD)


def verify_occurrence(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    predicted = predicted_occurrence(spec.phenomenon, forecast)
    if predicted is None:
        return None
    p = 1.0 if predicted else 0.0
    o = 1.0 if obs.has_code(spec.phenomenon) else 0.0
    return _probability_record(forecast, spec.name, p, o, p, o)


def forecast_amount(phenomenon: str, forecast: Forecast) -> Optional[float]:
    if phenomenon == PHENOMENON_RAIN:
        return _sum_present(finite_or_none(forecast.rain), finite_or_none(forecast.showers))
    if phenomenon == PHENOMENON_SNOW:
        return finite_or_none(forecast.snowfall)
    code = _weather_code(forecast)
    if code is None:
        return None
    if code in FREEZING_CODES:
        return finite_or_none(forecast.precipitation)
    return 0.0


def verify_amount(spec: VariableSpec, obs: Observation, forecast: Forecast) -> Optional[VerificationRecord]:
    reported = AMOUNT_PHENOMENA.intersection(obs.weather_codes or [])
    if len(reported) > 1:
        return None
    if spec.phenomenon in reported:
        o = finite_or_none(getattr(obs, spec.obs_field, None))
        if o is None:
            return None
    else:
        o = 0.0
    f = forecast_amount(spec.phenomenon, forecast)
    if f is None:
        return None
    return _difference_record(forecast, spec.name, f, o)


VERIFIERS: Dict[VariableKind, Callable[[VariableSpec, Observation, Forecast], Optional[VerificationRecord]]] = {
    VariableKind.SCALAR: verify_scalar,
    VariableKind.ANGULAR: verify_angular,
    VariableKind.VECTOR: verify_vector,
    VariableKind.BRIER: verify_brier,
    VariableKind.OCCURRENCE: verify_occurrence,
    VariableKind.AMOUNT: verify_amount,
}


def verify_pair(obs: Observation, forecast: Forecast) -> List[VerificationRecord]:
    """Every catalogue check that can be made for one observation/forecast pair."""
    if obs.obs_time != forecast.valid_time or forecast.valid_time < forecast.issue_time:
        return []
    records: List[VerificationRecord] = []
    for spec in VERIFICATION_VARIABLES.values():
        record = VERIFIERS[spec.kind](spec, obs, forecast)
        if record is not None:
            records.append(record)
    return records


def verify_window(observations: Iterable[Observation], forecasts: Iterable[Forecast]) -> tuple:
    """Verify forecasts against the observations sharing their valid time.

    Returns (records, negative_lead_count).
    """
    by_time = {o.obs_time: o for o in observations}
    records: List[VerificationRecord] = []
    negative = 0
    for forecast in forecasts:
        obs = by_time.get(forecast.valid_time)
        if obs is None:
            continue
        if forecast.valid_time < forecast.issue_time:
            negative += 1
            continue
        records.extend(verify_pair(obs, forecast))
    return records, negative


def run_verification(store, chunk_hours: int = 6, *, start: Optional[int] = None,
                     end: Optional[int] = None) -> VerificationRun:
    """Verify every stored forecast that has a matching observation.

    Scans the forecast valid-time range (or `[start, end)`) in `chunk_hours`
    slices and upserts each slice's records on their own.
    """
    run = VerificationRun()
    if start is None or end is None:
        valid_range = store.forecast_valid_range()
        if valid_range is None:
            logger.info("No forecasts to verify")
            return run
        start = valid_range[0] if start is None else start
        end = valid_range[1] + 1 if end is None else end

    step = chunk_hours * HOUR_MS
    chunk_start = start
    while chunk_start < end:
        chunk_end = min(chunk_start + step, end)
        forecasts = store.forecasts_between(chunk_start, chunk_end)
        if forecasts:
            observations = store.observations_between(chunk_start - HOUR_MS, chunk_end + HOUR_MS)
            records, negative = verify_window(observations, forecasts)
            run.skipped_negative_lead += negative
            if records:
                run.records += store.upsert_verifications(records)
                run.days.update(day_of(r.valid_time) for r in records)
        chunk_start = chunk_end

    logger.info(
        "Verification complete",
        extra={"records": run.records, "days": len(run.days), "skipped_negative_lead": run.skipped_negative_lead},
    )
    return run
