"""Station report (METAR/SPECI) and terminal forecast (TAF) fetching.

Ground truth comes from several layers tried in priority order. CheckWX is
used only when an API key is configured; AviationWeather is public and is
also reachable through two mirror proxies when it blocks us directly. A
layer is accepted once it returns at least `min_count` reports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional
from urllib.parse import quote, urlencode

from skillboard.config import settings
from skillboard.data_sources.http_client import build_session, get_json
from skillboard.errors import DataQualityError, GroundTruthUnavailableError, UpstreamFetchError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="metar_client")

session = build_session(
    "skillboard_metar_cache",
    expire_after=settings.http_cache_seconds,
    retries=settings.http_retries,
    backoff_factor=settings.http_backoff_factor,
)

CHECKWX_BASE_URL = "https://api.checkwx.com"
AVIATIONWEATHER_METAR_URL = "https://aviationweather.gov/api/data/metar"
AVIATIONWEATHER_TAF_URL = "https://aviationweather.gov/api/data/taf"
CORSPROXY_URL = "https://corsproxy.io/?"
ALLORIGINS_URL = "https://api.allorigins.win/raw?url="


@dataclass
class ReportLayer:
    """One source of station reports."""
    name: str
    fetch: Callable[[], Any]


@dataclass
class StationFetchResult:
    reports: List[Any]
    source: str


def _checkwx(endpoint: str, api_key: str, *, timeout: float) -> Any:
    return get_json(session, f"{CHECKWX_BASE_URL}/{endpoint}", headers={"X-API-Key": api_key}, timeout=timeout)


def _aviationweather_url(station: str, hours: int) -> str:
    query = urlencode({"ids": station, "format": "json", "hours": hours})
    return f"{AVIATIONWEATHER_METAR_URL}?{query}"


def report_layers(station: str, *, api_key: Optional[str], hours: int, timeout: float) -> List[ReportLayer]:
    """Return the report layers to try, in priority order."""
    layers: List[ReportLayer] = []
    if api_key:
        layers.append(
            ReportLayer(
                "CheckWX decoded",
                lambda: (_checkwx(f"metar/{station}/decoded?hours={hours}", api_key, timeout=timeout) or {}).get("data"),
            )
        )
        layers.append(
            ReportLayer(
                "CheckWX raw",
                lambda: [
                    {"raw_text": raw}
                    for raw in (_checkwx(f"metar/{station}?hours={hours}", api_key, timeout=timeout) or {}).get("data") or []
                    if isinstance(raw, str)
                ],
            )
        )
    target = _aviationweather_url(station, hours)
    layers.append(ReportLayer("AviationWeather JSON", lambda: get_json(session, target, timeout=timeout)))
    layers.append(
        ReportLayer("corsproxy -> AviationWeather", lambda: get_json(session, CORSPROXY_URL + quote(target, safe=""), timeout=timeout))
    )
    layers.append(
        ReportLayer("allorigins -> AviationWeather", lambda: get_json(session, ALLORIGINS_URL + quote(target, safe=""), timeout=timeout))
    )
    return layers


def fetch_station_reports(
    station: str,
    *,
    api_key: Optional[str] = None,
    hours: int = 48,
    min_count: int = 20,
    timeout: float = 20.0,
) -> StationFetchResult:
    """Return raw reports from the first layer that yields enough of them.

    Raises GroundTruthUnavailableError when every layer fails.
    """
    for layer in report_layers(station, api_key=api_key, hours=hours, timeout=timeout):
        try:
            result = layer.fetch()
        except (UpstreamFetchError, DataQualityError) as exc:
            logger.warning("Report layer failed", extra={"layer": layer.name, "error": str(exc)})
            continue
        if not isinstance(result, list) or not result:
            logger.info("Report layer returned no data", extra={"layer": layer.name})
            continue
        if len(result) < min_count:
            logger.info(
                "Report layer returned insufficient data",
                extra={"layer": layer.name, "records": len(result), "required": min_count},
            )
            continue
        logger.info("Fetched station reports", extra={"layer": layer.name, "records": len(result)})
        return StationFetchResult(reports=result, source=layer.name)

    logger.error("All station report layers failed", extra={"station": station})
    raise GroundTruthUnavailableError(f"No station report source available for {station}")


def fetch_taf(station: str, *, api_key: Optional[str] = None, timeout: float = 20.0) -> Optional[str]:
    """Return the current TAF text, or None when no source has one."""
    if api_key:
        try:
            data = _checkwx(f"taf/{station}/decoded", api_key, timeout=timeout) or {}
            items = data.get("data") or []
            if items and items[0].get("raw_text"):
                return items[0]["raw_text"]
        except (UpstreamFetchError, DataQualityError) as exc:
            logger.warning("CheckWX TAF fetch failed", extra={"error": str(exc)})
    try:
        data = get_json(session, AVIATIONWEATHER_TAF_URL, params={"ids": station, "format": "json"}, timeout=timeout)
    except (UpstreamFetchError, DataQualityError) as exc:
        logger.warning("AviationWeather TAF fetch failed", extra={"error": str(exc)})
        return None
    if isinstance(data, list) and data:
        return data[0].get("rawTAF") or data[0].get("raw_text")
    return None
