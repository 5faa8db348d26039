"""Synthetic consensus models: average-of-models and median-of-models."""

from __future__ import annotations

import math
import statistics
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from skillboard.models import (
    AVERAGE_MODEL_ID,
    DAY_MS,
    FORECAST_VARIABLES,
    HOUR_MS,
    MEDIAN_MODEL_ID,
    Forecast,
    finite_or_none,
)
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="ensemble")

ANGULAR_FIELDS = frozenset({"wind_direction_10m"})
# WMO codes are categories; averaging them would invent weather.
CATEGORICAL_FIELDS = frozenset({"weather_code"})
MIN_CONTRIBUTORS = 2


def angular_difference(a: float, b: float) -> float:
    """Signed difference a - b wrapped into (-180, 180]."""
    d = (a - b) % 360.0
    if d > 180.0:
        d -= 360.0
    return d


def circular_mean(angles_deg: Sequence[float]) -> Optional[float]:
    """Mean direction via unit vectors, normalized to [0, 360)."""
    if not angles_deg:
        return None
    sin_sum = sum(math.sin(math.radians(a)) for a in angles_deg)
    cos_sum = sum(math.cos(math.radians(a)) for a in angles_deg)
    mean = math.degrees(math.atan2(sin_sum / len(angles_deg), cos_sum / len(angles_deg))) % 360.0
    # atan2 of (-0.0, x) can land exactly on 360 after the modulo
    return 0.0 if mean >= 360.0 else mean


def circular_median(angles_deg: Sequence[float]) -> Optional[float]:
    """The contributed angle closest (wrap-aware) to the circular mean."""
    mean = circular_mean(angles_deg)
    if mean is None:
        return None
    return min(angles_deg, key=lambda a: abs(angular_difference(a, mean)))


def _combine(field_name: str, values: List[float]) -> Tuple[Optional[float], Optional[float]]:
    if len(values) < MIN_CONTRIBUTORS:
        return None, None
    if field_name in ANGULAR_FIELDS:
        return circular_mean(values), circular_median(values)
    if field_name in CATEGORICAL_FIELDS:
        code = statistics.median_low(values)
        return code, code
    return statistics.fmean(values), statistics.median(values)


def synthesize_cell(forecasts: Sequence[Forecast]) -> List[Forecast]:
    """Build the average and median records for one (issue, valid) cell.

    Synthetic inputs are ignored. Returns an empty list when fewer than two
    concrete models contribute to the cell.
    """
    concrete = [f for f in forecasts if not f.is_synthetic]
    if len({f.model_id for f in concrete}) < MIN_CONTRIBUTORS:
        return []
    issue_time, valid_time = concrete[0].issue_time, concrete[0].valid_time
    average = Forecast(model_id=AVERAGE_MODEL_ID, issue_time=issue_time, valid_time=valid_time)
    median = Forecast(model_id=MEDIAN_MODEL_ID, issue_time=issue_time, valid_time=valid_time)
    for name in FORECAST_VARIABLES:
        values = [v for v in (finite_or_none(f.value(name)) for f in concrete) if v is not None]
        avg_value, med_value = _combine(name, values)
        setattr(average, name, avg_value)
        setattr(median, name, med_value)
    return [average, median]


def synthesize(forecasts: Iterable[Forecast]) -> List[Forecast]:
    """Group forecasts into (issue_time, valid_time) cells and synthesize each."""
    cells: Dict[Tuple[int, int], List[Forecast]] = {}
    for f in forecasts:
        if f.is_synthetic:
            continue
        cells.setdefault((f.issue_time, f.valid_time), []).append(f)
    out: List[Forecast] = []
    for key in sorted(cells):
        out.extend(synthesize_cell(cells[key]))
    return out


def generate_synthetic_models(store, issue_time: int, window_days: int = 10, chunk_hours: int = 2) -> int:
    """Write consensus forecasts for valid times within `window_days` of `issue_time`.

    The window is scanned in `chunk_hours` slices so only one slice of
    forecasts is held in memory; each slice is upserted on its own.
    """
    start = issue_time - window_days * DAY_MS
    end = issue_time + window_days * DAY_MS
    step = chunk_hours * HOUR_MS
    total = 0
    chunk_start = start
    while chunk_start < end:
        chunk_end = min(chunk_start + step, end)
        synthetic = synthesize(store.forecasts_between(chunk_start, chunk_end))
        if synthetic:
            total += store.upsert_forecasts(synthetic)
        chunk_start = chunk_end
    logger.info("Generated synthetic forecasts", extra={"issue_time": issue_time, "records": total})
    return total
