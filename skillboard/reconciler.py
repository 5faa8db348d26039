"""Ground-truth reconciliation: station reports plus reanalysis into hourly Observations.

Station reports arrive in three shapes (CheckWX decoded JSON, AviationWeather
JSON, bare raw METAR text). Each is parsed into a `StationReport` with SI-ish
units (°C, km/h, m, hPa, mm). Reports are grouped by their nearest hour; the
report closest to the hour supplies the continuous fields and the phenomenon
codes are the union over the whole group. Reanalysis never creates an hour on
its own, it only attaches amount fields to hours that have a real report.
"""

from __future__ import annotations

import calendar
import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from skillboard.domain import (
    PHENOMENON_FREEZING_RAIN,
    PHENOMENON_RAIN,
    PHENOMENON_SNOW,
    PHENOMENON_THUNDER,
)
from skillboard.errors import DataQualityError, UpstreamFetchError
from skillboard.models import HOUR_MS, Observation, finite_or_none, floor_hour, now_ms, parse_utc, round_hour
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="reconciler")

KT_TO_KMH = 1.852
MPS_TO_KMH = 3.6
SM_TO_M = 1609.34
FT_TO_M = 0.3048
INHG_TO_HPA = 33.8639
HUNDREDTHS_INCH_TO_MM = 0.254
# Altimeter values above this are already hPa; below it they are inHg.
HPA_MAGNITUDE_THRESHOLD = 800.0

CEILING_COVERS = ("BKN", "OVC", "VV")

_FREEZING_RE = re.compile(r"(^|\s)(-|\+)?(FZRA|FZDZ|FZFG)(\s|$)")
_FREEZING_PRECIP_RE = re.compile(r"(^|\s)(-|\+)?(FZRA|FZDZ)(\s|$)")
_RAIN_RE = re.compile(r"(^|\s)(-|\+)?(RA|DZ|SHRA|TSRA|RASN|SNRA)(\s|$)")
_SNOW_RE = re.compile(r"(^|\s)(-|\+)?(SN|SG|SHSN|BLSN|RASN|SNRA)(\s|$)")
_THUNDER_RE = re.compile(r"(^|\s)(-|\+)?(TS|TSRA)(\s|$)")
_VRB_RE = re.compile(r"(^|\s)VRB\d{2}(KT|MPS|KMH)(\s|$)")

_TIME_RE = re.compile(r"^(\d{2})(\d{2})(\d{2})Z$")
_WIND_RE = re.compile(r"^(\d{3}|VRB)(\d{2,3})(?:G(\d{2,3}))?(KT|MPS|KMH)$")
_VIS_METRES_RE = re.compile(r"^(\d{4})(?:NDV)?$")
_VIS_SM_RE = re.compile(r"^([PM])?(\d+)?(?:(\d)/(\d+))?SM$")
_TEMP_RE = re.compile(r"^(M)?(\d{2})/(?:(M)?(\d{2}))?$")
_QNH_RE = re.compile(r"^Q(\d{4})$")
_ALTIMETER_RE = re.compile(r"^A(\d{4})$")
_CLOUD_RE = re.compile(r"^(FEW|SCT|BKN|OVC|VV)(\d{3}|///)")
_PRECIP_RE = re.compile(r"^P(\d{4})$")


@dataclass
class StationReport:
    """One decoded station report at its exact observation time."""
    exact_time: int
    raw_text: str = ""
    temperature: Optional[float] = None
    dewpoint: Optional[float] = None
    wind_dir: Optional[float] = None
    wind_variable: bool = False
    wind_speed: Optional[float] = None
    wind_gust: Optional[float] = None
    visibility: Optional[float] = None
    pressure_msl: Optional[float] = None
    ceiling_agl: Optional[float] = None
    precip_1h: Optional[float] = None
    is_speci: bool = False
    phenomena: Set[str] = field(default_factory=set)


def pressure_to_hpa(value: Any) -> Optional[float]:
    """Convert an altimeter/pressure reading to hPa using the magnitude heuristic."""
    v = finite_or_none(value)
    if v is None:
        return None
    return v if v > HPA_MAGNITUDE_THRESHOLD else v * INHG_TO_HPA


def phenomena_from_text(text: str) -> Set[str]:
    """Return the phenomenon codes (RA, SN, FZRA, TS) present in a raw report."""
    codes: Set[str] = set()
    if not text:
        return codes
    if _FREEZING_RE.search(text):
        codes.add(PHENOMENON_FREEZING_RAIN)
    if _RAIN_RE.search(text) and not _FREEZING_PRECIP_RE.search(text):
        codes.add(PHENOMENON_RAIN)
    if _SNOW_RE.search(text):
        codes.add(PHENOMENON_SNOW)
    if _THUNDER_RE.search(text):
        codes.add(PHENOMENON_THUNDER)
    return codes


def _resolve_day_time(day: int, hour: int, minute: int, now: int) -> Optional[int]:
    """Place a DDHHMMZ group in the month of `now`, stepping back a month if needed."""
    ref = dt.datetime.fromtimestamp(now / 1000, tz=dt.timezone.utc)
    year, month = ref.year, ref.month
    for _ in range(3):
        if day <= calendar.monthrange(year, month)[1]:
            candidate = dt.datetime(year, month, day, hour % 24, minute, tzinfo=dt.timezone.utc)
            ms = int(candidate.timestamp() * 1000)
            if ms <= now + HOUR_MS:
                return ms
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return None


def _wind_to_kmh(value: float, unit: str) -> float:
    if unit == "KT":
        return value * KT_TO_KMH
    if unit == "MPS":
        return value * MPS_TO_KMH
    return value


def decode_metar_text(text: str, now: Optional[int] = None) -> Dict[str, Any]:
    """Decode the groups of a raw METAR/SPECI string.

    Returns a dict with any of: exact_time, temperature, dewpoint, wind_dir,
    wind_variable, wind_speed, wind_gust, visibility, pressure_msl,
    ceiling_agl, precip_1h. Groups that are absent are simply missing.
    """
    now = now if now is not None else now_ms()
    out: Dict[str, Any] = {}
    if not text:
        return out
    tokens = text.split()
    in_remarks = False
    prev = ""
    for token in tokens:
        if token == "RMK":
            in_remarks = True
            continue
        if in_remarks:
            m = _PRECIP_RE.match(token)
            if m and "precip_1h" not in out:
                out["precip_1h"] = int(m.group(1)) * HUNDREDTHS_INCH_TO_MM
            continue
        if token in ("TEMPO", "BECMG", "NOSIG"):
            break

        m = _TIME_RE.match(token)
        if m and "exact_time" not in out:
            out["exact_time"] = _resolve_day_time(int(m.group(1)), int(m.group(2)), int(m.group(3)), now)
            prev = token
            continue

        m = _WIND_RE.match(token)
        if m and "wind_speed" not in out:
            direction, speed, gust, unit = m.groups()
            out["wind_variable"] = direction == "VRB"
            out["wind_dir"] = None if direction == "VRB" else float(direction)
            out["wind_speed"] = _wind_to_kmh(float(speed), unit)
            if gust:
                out["wind_gust"] = _wind_to_kmh(float(gust), unit)
            prev = token
            continue

        m = _VIS_SM_RE.match(token)
        if m and "visibility" not in out:
            _, whole, num, den = m.groups()
            miles = float(whole) if whole else 0.0
            if num and den and float(den) > 0:
                miles += float(num) / float(den)
            if prev.isdigit() and len(prev) == 1:
                miles += float(prev)
            out["visibility"] = miles * SM_TO_M
            prev = token
            continue

        m = _VIS_METRES_RE.match(token)
        if m and "visibility" not in out and "wind_speed" in out:
            out["visibility"] = float(m.group(1))
            prev = token
            continue

        m = _TEMP_RE.match(token)
        if m and "temperature" not in out:
            t_neg, t_val, d_neg, d_val = m.groups()
            out["temperature"] = -float(t_val) if t_neg else float(t_val)
            if d_val is not None:
                out["dewpoint"] = -float(d_val) if d_neg else float(d_val)
            prev = token
            continue

        m = _QNH_RE.match(token)
        if m and "pressure_msl" not in out:
            out["pressure_msl"] = float(m.group(1))
            prev = token
            continue

        m = _ALTIMETER_RE.match(token)
        if m and "pressure_msl" not in out:
            out["pressure_msl"] = pressure_to_hpa(int(m.group(1)) / 100.0)
            prev = token
            continue

        m = _CLOUD_RE.match(token)
        if m and "ceiling_agl" not in out and m.group(1) in CEILING_COVERS and m.group(2) != "///":
            out["ceiling_agl"] = int(m.group(2)) * 100 * FT_TO_M
        prev = token
    return out


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def _dig(data: Mapping[str, Any], *path: str) -> Any:
    cur: Any = data
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def _leading_float(value: Any) -> Optional[float]:
    """Parse values like 10, "10", "10+" or "6.0" into a float."""
    if isinstance(value, str):
        m = re.match(r"^\s*(\d+(?:\.\d+)?)", value)
        return float(m.group(1)) if m else None
    return finite_or_none(value)


def _ceiling_from_layers(layers: Any) -> Optional[float]:
    if not isinstance(layers, list):
        return None
    for layer in layers:
        if not isinstance(layer, Mapping):
            continue
        cover = layer.get("code") or layer.get("cover")
        base_ft = _first(layer.get("base_feet_agl"), layer.get("base"))
        if cover in CEILING_COVERS and finite_or_none(base_ft) is not None:
            return float(base_ft) * FT_TO_M
    return None


def parse_station_report(raw: Any, now: Optional[int] = None) -> Optional[StationReport]:
    """Parse one report in any supported shape; None when it has no usable time."""
    now = now if now is not None else now_ms()
    if isinstance(raw, str):
        raw = {"raw_text": raw}
    if not isinstance(raw, Mapping):
        return None

    raw_text = str(raw.get("raw_text") or raw.get("rawOb") or "")
    decoded = decode_metar_text(raw_text, now)

    exact_time: Optional[int] = None
    if raw.get("observed"):
        exact_time = parse_utc(raw.get("observed"))
    elif raw.get("obsTime") is not None or raw.get("obstime") is not None:
        t = _first(raw.get("obsTime"), raw.get("obstime"))
        exact_time = int(t * 1000) if isinstance(t, (int, float)) else parse_utc(t)
    elif raw.get("reportTime"):
        exact_time = parse_utc(raw.get("reportTime"))
    if exact_time is None:
        exact_time = decoded.get("exact_time")
    if exact_time is None:
        return None

    wdir_raw = _first(_dig(raw, "wind", "degrees"), raw.get("wdir"))
    variable_wind = bool(_VRB_RE.search(raw_text)) or wdir_raw == "VRB" or bool(decoded.get("wind_variable"))
    wind_dir = None if wdir_raw == "VRB" else finite_or_none(wdir_raw)

    speed_kts = finite_or_none(_first(_dig(raw, "wind", "speed_kts"), raw.get("wspd")))
    gust_kts = finite_or_none(_first(_dig(raw, "wind", "gust_kts"), raw.get("wgst")))

    visibility = finite_or_none(_dig(raw, "visibility", "meters_float"))
    if visibility is None:
        miles = _leading_float(raw.get("visib"))
        visibility = miles * SM_TO_M if miles is not None else None

    pressure = finite_or_none(_dig(raw, "barometer", "mb"))
    if pressure is None:
        pressure = pressure_to_hpa(_first(_dig(raw, "barometer", "hg"), raw.get("altim")))

    return StationReport(
        exact_time=int(exact_time),
        raw_text=raw_text,
        temperature=finite_or_none(_first(_dig(raw, "temperature", "celsius"), raw.get("temp"), decoded.get("temperature"))),
        dewpoint=finite_or_none(_first(_dig(raw, "dewpoint", "celsius"), raw.get("dewp"), decoded.get("dewpoint"))),
        wind_dir=_first(wind_dir, None if variable_wind else decoded.get("wind_dir")),
        wind_variable=variable_wind,
        wind_speed=speed_kts * KT_TO_KMH if speed_kts is not None else decoded.get("wind_speed"),
        wind_gust=gust_kts * KT_TO_KMH if gust_kts is not None else decoded.get("wind_gust"),
        visibility=_first(visibility, decoded.get("visibility")),
        pressure_msl=_first(pressure, decoded.get("pressure_msl")),
        ceiling_agl=_first(_ceiling_from_layers(raw.get("clouds")), decoded.get("ceiling_agl")),
        precip_1h=decoded.get("precip_1h"),
        is_speci=raw_text.startswith("SPECI") or raw.get("metarType") == "SPECI",
        phenomena=phenomena_from_text(raw_text),
    )


def group_by_hour(reports: Iterable[StationReport]) -> Dict[int, List[StationReport]]:
    """Group reports under the hour nearest to their exact time."""
    groups: Dict[int, List[StationReport]] = {}
    for report in reports:
        groups.setdefault(round_hour(report.exact_time), []).append(report)
    return groups


def _report_type(group: List[StationReport], primary: StationReport) -> str:
    if len(group) > 1:
        return f"METAR+{len(group) - 1}SPECI"
    return "SPECI" if primary.is_speci else "METAR"


def reconcile_observations(
    raw_reports: Iterable[Any],
    reanalysis: Optional[Mapping[int, Mapping[str, Optional[float]]]] = None,
    *,
    now: Optional[int] = None,
    lookback_hours: int = 48,
) -> List[Observation]:
    """Build at most one Observation per hour for the look-back window, oldest first."""
    now = now if now is not None else now_ms()
    reanalysis = reanalysis or {}
    parsed = [r for r in (parse_station_report(raw, now) for raw in raw_reports) if r is not None]
    groups = group_by_hour(parsed)
    current_hour = floor_hour(now)

    observations: List[Observation] = []
    for i in range(lookback_hours):
        target = current_hour - i * HOUR_MS
        group = groups.get(target)
        if not group:
            continue
        primary = min(group, key=lambda r: abs(r.exact_time - target))
        codes: Set[str] = set()
        for report in group:
            codes |= report.phenomena
        era = reanalysis.get(target) or {}
        observations.append(
            Observation(
                obs_time=target,
                report_type=_report_type(group, primary),
                temperature=primary.temperature,
                dewpoint=primary.dewpoint,
                wind_dir=primary.wind_dir,
                wind_variable=primary.wind_variable,
                wind_speed=primary.wind_speed,
                wind_gust=primary.wind_gust,
                visibility=primary.visibility,
                pressure_msl=primary.pressure_msl,
                ceiling_agl=primary.ceiling_agl,
                precip_1h=primary.precip_1h,
                weather_codes=sorted(codes),
                raw_text=primary.raw_text,
                era_precip_amt=era.get("era_precip_amt"),
                era_rain_amt=era.get("era_rain_amt"),
                era_snow_amt=era.get("era_snow_amt"),
                era_wind_gust=era.get("era_wind_gust"),
            )
        )
    observations.sort(key=lambda o: o.obs_time)
    logger.info(
        "Reconciled observations",
        extra={"reports": len(parsed), "hours_with_reports": len(groups), "observations": len(observations)},
    )
    return observations


def observation_window(now: int, lookback_hours: int) -> tuple[int, int]:
    """The `[start, end)` hours owned by one reconciliation pass."""
    current_hour = floor_hour(now)
    return current_hour - (lookback_hours - 1) * HOUR_MS, current_hour + HOUR_MS


def refresh_observations(store, data_source, *, now: Optional[int] = None, lookback_hours: int = 48) -> List[Observation]:
    """Fetch ground truth, reconcile it and replace the stored look-back window.

    Station-source failure propagates (GroundTruthUnavailableError); a
    reanalysis failure only leaves the supplementary amounts null.
    """
    now = now if now is not None else now_ms()
    fetched = data_source.fetch_station_reports()
    try:
        reanalysis = data_source.fetch_reanalysis()
    except (UpstreamFetchError, DataQualityError) as exc:
        logger.warning("Reanalysis unavailable; amount fields will be null", extra={"error": str(exc)})
        reanalysis = {}

    observations = reconcile_observations(fetched.reports, reanalysis, now=now, lookback_hours=lookback_hours)
    start, end = observation_window(now, lookback_hours)
    store.replace_observations(start, end, observations)
    logger.info("Stored observations", extra={"source": fetched.source, "observations": len(observations)})
    return observations
