"""Domain vocabulary for model verification.

This module is the shared contract between the verification engine and the
HTTP surface: the forecast model catalogue, the verification variable
catalogue with its scoring policies, enums for configurable behaviours, and
the Pydantic schemas returned by the API. No scoring logic lives here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class _StrictBaseModel(BaseModel):
    """Base model with strict extra handling."""

    model_config = ConfigDict(extra="forbid")


# --------------------------------------------------------------------------
# Forecast model catalogue
# --------------------------------------------------------------------------

FULL_VARS = (
    "temperature_2m,dew_point_2m,wind_speed_10m,wind_direction_10m,"
    "wind_gusts_10m,pressure_msl,visibility,relative_humidity_2m,apparent_temperature,"
    "precipitation,snowfall,snow_depth,rain,showers,weather_code,cloud_cover,"
    "cloud_cover_low,cloud_cover_mid,cloud_cover_high,cape,precipitation_probability"
)
BASE_VARS = (
    "temperature_2m,dew_point_2m,wind_speed_10m,wind_direction_10m,wind_gusts_10m,"
    "pressure_msl,precipitation,rain,showers,snowfall,weather_code,precipitation_probability"
)
LIMITED_VARS = (
    "temperature_2m,dew_point_2m,wind_speed_10m,wind_direction_10m,"
    "pressure_msl,precipitation,snowfall,weather_code"
)
MINIMAL_VARS = "temperature_2m,dew_point_2m,wind_speed_10m,wind_direction_10m,pressure_msl,precipitation"


@dataclass(frozen=True)
class ModelConfig:
    """One concrete forecast model and how to ask Open-Meteo for it."""
    id: str
    provider: str  # path segment under /v1/, or "ensemble" for the ensemble API
    days: int
    api_model: Optional[str] = None
    vars: Optional[str] = None


MODELS: Tuple[ModelConfig, ...] = (
    ModelConfig(id="gem", provider="gem", days=10),
    ModelConfig(id="gfs", provider="gfs", days=16),
    ModelConfig(id="ecmwf", provider="ecmwf", days=15, api_model="ecmwf_ifs025"),
    ModelConfig(id="ecmwf-aifs", provider="ecmwf", days=15, api_model="ecmwf_aifs025", vars=BASE_VARS),
    ModelConfig(id="dwd-icon", provider="dwd-icon", days=7),
    ModelConfig(id="jma", provider="jma", days=11),
    ModelConfig(id="cma", provider="cma", days=10),
    ModelConfig(id="meteofrance", provider="meteofrance", days=4),
    ModelConfig(id="bom", provider="bom", days=10),
    ModelConfig(id="gfs-graphcast", provider="gfs", days=10, api_model="gfs_graphcast025", vars=LIMITED_VARS),
    ModelConfig(id="gfs-ensemble", provider="ensemble", days=16, api_model="gfs025", vars=BASE_VARS),
)


def model_ids() -> List[str]:
    """Concrete model ids in catalogue order."""
    return [m.id for m in MODELS]


# --------------------------------------------------------------------------
# Verification variables
# --------------------------------------------------------------------------

OVERALL_SCORE = "overall_score"

PHENOMENON_RAIN = "RA"
PHENOMENON_SNOW = "SN"
PHENOMENON_FREEZING_RAIN = "FZRA"
PHENOMENON_THUNDER = "TS"
AMOUNT_PHENOMENA: FrozenSet[str] = frozenset({PHENOMENON_RAIN, PHENOMENON_SNOW, PHENOMENON_FREEZING_RAIN})

# WMO weather-code families as emitted by Open-Meteo.
FREEZING_CODES: FrozenSet[int] = frozenset({56, 57, 66, 67})
RAIN_CODES: FrozenSet[int] = frozenset(
    c for c in list(range(51, 68)) + list(range(80, 83)) + list(range(95, 100)) if c not in FREEZING_CODES
)
SNOW_CODES: FrozenSet[int] = frozenset(list(range(71, 78)) + [85, 86])

OCCURRENCE_AMOUNT_THRESHOLD = 0.1
OUTLIER_ABS_ERROR_CEILING = 2000.0


class VariableKind(str, Enum):
    """How forecast and observed values are compared."""
    SCALAR = "scalar"
    ANGULAR = "angular"
    VECTOR = "vector"
    BRIER = "brier"
    OCCURRENCE = "occurrence"
    AMOUNT = "amount"


class VariableSpec(_StrictBaseModel):
    """Catalogue entry for one verified variable."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    kind: VariableKind
    label: str
    obs_field: str | None = None
    phenomenon: str | None = None
    composite: bool = True
    outlier_exempt: bool = False


VERIFICATION_VARIABLES: Dict[str, VariableSpec] = {
    spec.name: spec
    for spec in (
        VariableSpec(name="temperature_2m", kind=VariableKind.SCALAR, label="Temperature (°C)",
                     obs_field="temperature"),
        VariableSpec(name="dew_point_2m", kind=VariableKind.SCALAR, label="Dew Point (°C)",
                     obs_field="dewpoint"),
        VariableSpec(name="wind_speed_10m", kind=VariableKind.SCALAR, label="Wind Speed (km/h)",
                     obs_field="wind_speed"),
        VariableSpec(name="wind_gusts_10m", kind=VariableKind.SCALAR, label="Wind Gusts (km/h)",
                     obs_field="wind_gust"),
        VariableSpec(name="pressure_msl", kind=VariableKind.SCALAR, label="Pressure (hPa)",
                     obs_field="pressure_msl", composite=False, outlier_exempt=True),
        VariableSpec(name="visibility", kind=VariableKind.SCALAR, label="Visibility (m)",
                     obs_field="visibility", composite=False, outlier_exempt=True),
        VariableSpec(name="precipitation", kind=VariableKind.SCALAR, label="Total Precip (mm)",
                     obs_field="precip_1h"),
        VariableSpec(name="wind_direction_10m", kind=VariableKind.ANGULAR, label="Wind Direction (°)",
                     obs_field="wind_dir"),
        VariableSpec(name="wind_vector", kind=VariableKind.VECTOR, label="Wind Vector Error"),
        VariableSpec(name="precipitation_probability", kind=VariableKind.BRIER,
                     label="Any Precip (Brier Score)", outlier_exempt=True),
        VariableSpec(name="rain_occurrence", kind=VariableKind.OCCURRENCE, label="Rain Event (Binary)",
                     phenomenon=PHENOMENON_RAIN, outlier_exempt=True),
        VariableSpec(name="snow_occurrence", kind=VariableKind.OCCURRENCE, label="Snow Event (Binary)",
                     phenomenon=PHENOMENON_SNOW, outlier_exempt=True),
        VariableSpec(name="freezing_rain_occurrence", kind=VariableKind.OCCURRENCE,
                     label="Freezing Rain (Binary)", phenomenon=PHENOMENON_FREEZING_RAIN, outlier_exempt=True),
        VariableSpec(name="rain_amount", kind=VariableKind.AMOUNT, label="Rain Amount (mm)",
                     obs_field="era_rain_amt", phenomenon=PHENOMENON_RAIN),
        VariableSpec(name="snow_amount", kind=VariableKind.AMOUNT, label="Snow Amount (cm)",
                     obs_field="era_snow_amt", phenomenon=PHENOMENON_SNOW),
        VariableSpec(name="freezing_rain_amount", kind=VariableKind.AMOUNT, label="Freezing Rain (mm)",
                     obs_field="era_precip_amt", phenomenon=PHENOMENON_FREEZING_RAIN),
    )
}


def is_known_variable(name: str) -> bool:
    return name == OVERALL_SCORE or name in VERIFICATION_VARIABLES


def composite_variables() -> List[str]:
    """Variables that feed the overall score."""
    return [name for name, spec in VERIFICATION_VARIABLES.items() if spec.composite]


# Floor for the consensus baseline so a near-perfect field cannot blow up scores.
DEFAULT_MIN_MAE_THRESHOLD = 0.1
MIN_MAE_THRESHOLDS: Dict[str, float] = {
    "temperature_2m": 0.5,
    "dew_point_2m": 0.5,
    "wind_speed_10m": 1.0,
    "wind_direction_10m": 15.0,
    "wind_gusts_10m": 1.5,
    "wind_vector": 1.5,
    "pressure_msl": 0.5,
    "visibility": 1000.0,
    "precipitation": 0.2,
    "rain_amount": 0.2,
    "snow_amount": 0.2,
    "freezing_rain_amount": 0.2,
    "rain_occurrence": 0.05,
    "snow_occurrence": 0.05,
    "freezing_rain_occurrence": 0.05,
    "precipitation_probability": 0.05,
}

# "2.5x worse than the consensus" for each variable a model does not report.
MISSING_DATA_PENALTY_SCORE = 2.5


def min_mae_threshold(variable: str) -> float:
    return MIN_MAE_THRESHOLDS.get(variable, DEFAULT_MIN_MAE_THRESHOLD)


# --------------------------------------------------------------------------
# Configurable behaviours
# --------------------------------------------------------------------------

class BucketInclusivity(str, Enum):
    """Whether a lead-time bucket includes its upper bound."""
    HALF_OPEN = "half_open"  # [lower, upper)
    CLOSED = "closed"  # [lower, upper]


class MissingVariablePolicy(str, Enum):
    """How the composite treats variables a model never reports."""
    NO_PENALTY = "no_penalty"
    FIXED_PENALTY = "fixed_penalty"


class StatsSource(str, Enum):
    """Where leaderboard statistics are read from."""
    ROLLUP = "rollup"
    LIVE = "live"


class CycleStatus(str, Enum):
    """Single-flight state of the update cycle."""
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


# --------------------------------------------------------------------------
# API schemas
# --------------------------------------------------------------------------

class LeaderboardRow(_StrictBaseModel):
    """One ranked model for a (bucket, variable) leaderboard."""
    model: str
    avg_mae: float
    avg_rmse: float
    avg_mse: float
    avg_bias: float
    std_error: float | None = None
    total_verifications: int = 0
    variables_reported: int = 0


class ModelVariableStats(_StrictBaseModel):
    """Error statistics for one model and one variable."""
    model_id: str
    variable: str
    mae: float
    mse: float
    rmse: float
    bias: float
    std_error: float | None = None
    n: int


class InsufficientData(_StrictBaseModel):
    """Returned instead of rows when no model qualifies."""
    status: str = "insufficient_data"
    bucket: str
    variable: str


class StatusResponse(_StrictBaseModel):
    """Service heartbeat and update cycle state."""
    status: str = "online"
    cycle_state: CycleStatus
    last_fetch: int | None = None
    last_error: str | None = None
    server_time: int
    unavailable_models: List[str] = Field(default_factory=list)


class TafResponse(_StrictBaseModel):
    taf: str | None = None


class MessageResponse(_StrictBaseModel):
    message: str
    started: bool = True
