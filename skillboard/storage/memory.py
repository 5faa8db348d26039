"""In-memory verification store, intended for development and tests."""

import copy
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from skillboard.models import (
    DailyStatAccumulator,
    Forecast,
    Observation,
    VerificationRecord,
    day_of,
)
from skillboard.storage.base import VerificationStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="storage/in_memory_store")


class InMemoryVerificationStore(VerificationStore):
    """Thread-safe dict-backed store. Values are copied on the way in and out."""

    def __init__(self) -> None:
        logger.debug("Initializing InMemoryVerificationStore")
        self._observations: Dict[int, Observation] = {}
        self._forecasts: Dict[str, Forecast] = {}
        self._verifications: Dict[str, VerificationRecord] = {}
        self._metadata: Dict[str, str] = {}
        self._daily: Dict[Tuple[str, str, str, str], DailyStatAccumulator] = {}
        self._cache: Dict[Tuple[str, str], Tuple[List[dict], int]] = {}
        self._lock = threading.Lock()

    # observations

    def replace_observations(self, start: int, end: int, observations: Iterable[Observation]) -> int:
        incoming = [copy.deepcopy(o) for o in observations]
        with self._lock:
            for t in [t for t in self._observations if start <= t < end]:
                del self._observations[t]
            for obs in incoming:
                self._observations[obs.obs_time] = obs
        return len(incoming)

    def latest_observation(self) -> Optional[Observation]:
        with self._lock:
            if not self._observations:
                return None
            return copy.deepcopy(self._observations[max(self._observations)])

    def recent_observations(self, limit: int) -> List[Observation]:
        with self._lock:
            times = sorted(self._observations, reverse=True)[: max(0, limit)]
            return [copy.deepcopy(self._observations[t]) for t in times]

    def observations_between(self, start: int, end: int) -> List[Observation]:
        with self._lock:
            times = sorted(t for t in self._observations if start <= t < end)
            return [copy.deepcopy(self._observations[t]) for t in times]

    # forecasts

    def upsert_forecasts(self, forecasts: Iterable[Forecast]) -> int:
        count = 0
        with self._lock:
            for f in forecasts:
                self._forecasts[f.id] = copy.deepcopy(f)
                count += 1
        return count

    def forecasts_between(self, start: int, end: int) -> List[Forecast]:
        with self._lock:
            return [copy.deepcopy(f) for f in self._forecasts.values() if start <= f.valid_time < end]

    def forecast_valid_range(self) -> Optional[Tuple[int, int]]:
        with self._lock:
            if not self._forecasts:
                return None
            valid = [f.valid_time for f in self._forecasts.values()]
            return min(valid), max(valid)

    # verifications

    def upsert_verifications(self, records: Iterable[VerificationRecord]) -> int:
        count = 0
        with self._lock:
            for r in records:
                self._verifications[r.key] = copy.deepcopy(r)
                count += 1
        return count

    def verifications_between(self, start: int, end: int) -> List[VerificationRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._verifications.values() if start <= r.valid_time < end]

    def query_verifications(self, *, model_id=None, variable=None, min_lead=None, max_lead=None) -> List[VerificationRecord]:
        with self._lock:
            out = []
            for r in self._verifications.values():
                if model_id is not None and r.model_id != model_id:
                    continue
                if variable is not None and r.variable != variable:
                    continue
                if min_lead is not None and r.lead_time_hours < min_lead:
                    continue
                if max_lead is not None and r.lead_time_hours > max_lead:
                    continue
                out.append(copy.deepcopy(r))
            return out

    def verification_days(self) -> Set[str]:
        with self._lock:
            return {day_of(r.valid_time) for r in self._verifications.values()}

    # metadata

    def get_metadata(self, key: str) -> Optional[str]:
        with self._lock:
            return self._metadata.get(key)

    def set_metadata(self, key: str, value: str) -> None:
        with self._lock:
            self._metadata[key] = str(value)

    def delete_metadata(self, key: str) -> None:
        with self._lock:
            self._metadata.pop(key, None)

    def metadata_with_prefix(self, prefix: str) -> Dict[str, str]:
        with self._lock:
            return {k: v for k, v in self._metadata.items() if k.startswith(prefix)}

    # daily rollups

    def replace_daily_stats(self, day: str, accumulators: Iterable[DailyStatAccumulator]) -> int:
        incoming = list(accumulators)
        with self._lock:
            for key in [k for k in self._daily if k[0] == day]:
                del self._daily[key]
            for acc in incoming:
                self._daily[(day, acc.model_id, acc.variable, acc.bucket)] = acc
        return len(incoming)

    def daily_stats(self, *, bucket=None, variable=None, model_id=None) -> List[DailyStatAccumulator]:
        with self._lock:
            return [
                acc
                for acc in self._daily.values()
                if (bucket is None or acc.bucket == bucket)
                and (variable is None or acc.variable == variable)
                and (model_id is None or acc.model_id == model_id)
            ]

    def rollup_days(self) -> Set[str]:
        with self._lock:
            return {k[0] for k in self._daily}

    # leaderboard cache

    def get_leaderboard_cache(self, bucket: str, variable: str) -> Optional[List[dict]]:
        with self._lock:
            hit = self._cache.get((bucket, variable))
            return copy.deepcopy(hit[0]) if hit else None

    def put_leaderboard_cache(self, bucket: str, variable: str, rows: List[dict], updated_at: int) -> None:
        with self._lock:
            self._cache[(bucket, variable)] = (copy.deepcopy(rows), updated_at)

    # retention

    def prune_before(self, cutoff: int) -> int:
        with self._lock:
            obs = [t for t in self._observations if t < cutoff]
            fc = [k for k, f in self._forecasts.items() if f.valid_time < cutoff]
            ver = [k for k, r in self._verifications.items() if r.valid_time < cutoff]
            for t in obs:
                del self._observations[t]
            for k in fc:
                del self._forecasts[k]
            for k in ver:
                del self._verifications[k]
        return len(obs) + len(fc) + len(ver)

    def clear(self) -> None:
        with self._lock:
            self._observations.clear()
            self._forecasts.clear()
            self._verifications.clear()
            self._metadata.clear()
            self._daily.clear()
            self._cache.clear()
