"""Canonical records flowing through the verification pipeline.

All timestamps are integer epoch milliseconds in UTC, aligned to the hour
where the record is keyed by time. Every record serializes to a plain dict
(and JSON) and back without touching its null pattern.
"""

from __future__ import annotations

import datetime as dt
import json
import math
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

HOUR_MS = 3_600_000
DAY_MS = 24 * HOUR_MS

AVERAGE_MODEL_ID = "average-of-models"
MEDIAN_MODEL_ID = "median-of-models"
SYNTHETIC_MODEL_IDS = (AVERAGE_MODEL_ID, MEDIAN_MODEL_ID)

FORECAST_VARIABLES = (
    "temperature_2m",
    "dew_point_2m",
    "wind_speed_10m",
    "wind_direction_10m",
    "wind_gusts_10m",
    "pressure_msl",
    "visibility",
    "relative_humidity_2m",
    "apparent_temperature",
    "precipitation",
    "snowfall",
    "snow_depth",
    "rain",
    "showers",
    "weather_code",
    "cloud_cover",
    "cloud_cover_low",
    "cloud_cover_mid",
    "cloud_cover_high",
    "cape",
    "precipitation_probability",
    "cloud_base_agl",
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def floor_hour(ms: int) -> int:
    """Truncate a timestamp to the start of its hour."""
    return (int(ms) // HOUR_MS) * HOUR_MS


def floor_day(ms: int) -> int:
    """Truncate a timestamp to 00:00 UTC of its day."""
    return (int(ms) // DAY_MS) * DAY_MS


def round_hour(ms: int) -> int:
    """Round a timestamp to the nearest hour (half past rounds up)."""
    return ((int(ms) + HOUR_MS // 2) // HOUR_MS) * HOUR_MS


def parse_utc(value: Any) -> Optional[int]:
    """Parse an ISO-8601 string (naive strings are UTC) into epoch ms, or None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return int(parsed.timestamp() * 1000)


def day_of(ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) containing the timestamp."""
    return dt.datetime.fromtimestamp(ms / 1000, tz=dt.timezone.utc).strftime("%Y-%m-%d")


def day_bounds(day: str) -> tuple[int, int]:
    """Return [start, end) epoch ms for a UTC day string."""
    start = dt.datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=dt.timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    return start_ms, start_ms + DAY_MS


def finite_or_none(value: Any) -> Optional[float]:
    """Coerce numeric-looking input to a finite float, otherwise None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _from_dict(cls, data: Dict[str, Any]):
    """Build a dataclass from a dict, ignoring keys it does not declare."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Observation:
    """One reconciled hour of ground truth."""
    obs_time: int
    report_type: str = "METAR"
    temperature: Optional[float] = None
    dewpoint: Optional[float] = None
    wind_dir: Optional[float] = None
    wind_variable: bool = False
    wind_speed: Optional[float] = None  # km/h
    wind_gust: Optional[float] = None  # km/h
    visibility: Optional[float] = None  # m
    pressure_msl: Optional[float] = None  # hPa
    ceiling_agl: Optional[float] = None  # m
    precip_1h: Optional[float] = None  # mm
    weather_codes: List[str] = field(default_factory=list)
    raw_text: str = ""
    # reanalysis supplements, never used to decide that an hour exists
    era_precip_amt: Optional[float] = None
    era_rain_amt: Optional[float] = None
    era_snow_amt: Optional[float] = None
    era_wind_gust: Optional[float] = None

    def has_code(self, code: str) -> bool:
        return code in (self.weather_codes or [])

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["weather_codes"] = list(self.weather_codes or [])
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Observation":
        obs = _from_dict(cls, data)
        obs.weather_codes = list(obs.weather_codes or [])
        return obs

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "Observation":
        return cls.from_dict(json.loads(raw))


@dataclass
class Forecast:
    """One model's prediction for one valid hour, issued at `issue_time`."""
    model_id: str
    issue_time: int
    valid_time: int
    temperature_2m: Optional[float] = None
    dew_point_2m: Optional[float] = None
    wind_speed_10m: Optional[float] = None
    wind_direction_10m: Optional[float] = None
    wind_gusts_10m: Optional[float] = None
    pressure_msl: Optional[float] = None
    visibility: Optional[float] = None
    relative_humidity_2m: Optional[float] = None
    apparent_temperature: Optional[float] = None
    precipitation: Optional[float] = None
    snowfall: Optional[float] = None
    snow_depth: Optional[float] = None
    rain: Optional[float] = None
    showers: Optional[float] = None
    weather_code: Optional[float] = None
    cloud_cover: Optional[float] = None
    cloud_cover_low: Optional[float] = None
    cloud_cover_mid: Optional[float] = None
    cloud_cover_high: Optional[float] = None
    cape: Optional[float] = None
    precipitation_probability: Optional[float] = None
    cloud_base_agl: Optional[float] = None

    @property
    def id(self) -> str:
        return f"{self.model_id}_{self.issue_time}_{self.valid_time}"

    @property
    def lead_time_hours(self) -> float:
        return (self.valid_time - self.issue_time) / HOUR_MS

    @property
    def is_synthetic(self) -> bool:
        return self.model_id in SYNTHETIC_MODEL_IDS

    def value(self, variable: str) -> Optional[float]:
        return getattr(self, variable, None)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["id"] = self.id
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Forecast":
        return _from_dict(cls, data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "Forecast":
        return cls.from_dict(json.loads(raw))


def verification_key(model_id: str, variable: str, valid_time: int, lead_time_hours: float) -> str:
    """Natural key shared by every recomputation of the same check."""
    return f"{model_id}_{variable}_{valid_time}_{lead_time_hours:.1f}"


@dataclass
class VerificationRecord:
    """Error of one forecast variable against one observation."""
    model_id: str
    variable: str
    valid_time: int
    issue_time: int
    lead_time_hours: float
    forecast_value: float
    observed_value: float
    error: float
    absolute_error: float
    squared_error: float
    percentage_error: Optional[float]
    bias: float

    @property
    def key(self) -> str:
        return verification_key(self.model_id, self.variable, self.valid_time, self.lead_time_hours)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["key"] = self.key
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationRecord":
        return _from_dict(cls, data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "VerificationRecord":
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class DailyStatAccumulator:
    """Running sums for one (day, model, variable, bucket); merges like a monoid."""
    day: Optional[str]
    model_id: str
    variable: str
    bucket: str
    sum_abs_error: float = 0.0
    sum_sq_error: float = 0.0
    sum_bias: float = 0.0
    sum_abs_error_sq: float = 0.0
    count: int = 0

    @classmethod
    def empty(cls, day: Optional[str], model_id: str, variable: str, bucket: str) -> "DailyStatAccumulator":
        return cls(day=day, model_id=model_id, variable=variable, bucket=bucket)

    def observe(self, record: VerificationRecord) -> "DailyStatAccumulator":
        """Return a new accumulator that also counts `record`."""
        return replace(
            self,
            sum_abs_error=self.sum_abs_error + record.absolute_error,
            sum_sq_error=self.sum_sq_error + record.squared_error,
            sum_bias=self.sum_bias + record.bias,
            sum_abs_error_sq=self.sum_abs_error_sq + record.absolute_error ** 2,
            count=self.count + 1,
        )

    def merge(self, other: "DailyStatAccumulator") -> "DailyStatAccumulator":
        if (self.model_id, self.variable, self.bucket) != (other.model_id, other.variable, other.bucket):
            raise ValueError("Cannot merge accumulators for different model/variable/bucket")
        return replace(
            self,
            day=self.day if self.day == other.day else None,
            sum_abs_error=self.sum_abs_error + other.sum_abs_error,
            sum_sq_error=self.sum_sq_error + other.sum_sq_error,
            sum_bias=self.sum_bias + other.sum_bias,
            sum_abs_error_sq=self.sum_abs_error_sq + other.sum_abs_error_sq,
            count=self.count + other.count,
        )

    __add__ = merge

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyStatAccumulator":
        return _from_dict(cls, data)
