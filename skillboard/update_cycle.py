"""Single-flight orchestration of one fetch → verify → score cycle."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from skillboard import config
from skillboard.aggregation import LeadTimeBucket, default_buckets, validate_disjoint
from skillboard.data_sources import build_data_source
from skillboard.data_sources.base import WeatherDataSource
from skillboard.domain import MODELS, CycleStatus, ModelConfig
from skillboard.ensemble import generate_synthetic_models
from skillboard.errors import CycleDiagnostics, SkillboardError
from skillboard.models import DAY_MS, floor_day, floor_hour, now_ms
from skillboard.normalizer import normalize_forecast
from skillboard.reconciler import observation_window, refresh_observations
from skillboard.rollup import refresh_leaderboard_cache, rollup_days
from skillboard.store_manager import get_store
from skillboard.verifier import run_verification
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="update_cycle")

LAST_FETCH_KEY = "last_forecast_fetch"
MODEL_UNAVAILABLE_PREFIX = "model_unavailable_"


def retention_cutoff(now: int, retention_days: int) -> int:
    """Oldest timestamp kept by pruning, on a UTC day boundary so no day is left half-pruned."""
    return floor_day(now - retention_days * DAY_MS)


@dataclass
class CycleState:
    """Thread-safe status of the update cycle."""
    status: CycleStatus = CycleStatus.IDLE
    last_error: Optional[str] = None
    last_started: Optional[int] = None
    last_finished: Optional[int] = None
    diagnostics: Optional[CycleDiagnostics] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_start(self) -> bool:
        """Flip to running; False when a cycle is already in flight."""
        with self._lock:
            if self.status == CycleStatus.RUNNING:
                return False
            self.status = CycleStatus.RUNNING
            self.last_started = now_ms()
            return True

    def finish(self, diagnostics: CycleDiagnostics) -> None:
        with self._lock:
            self.status = CycleStatus.IDLE
            self.last_error = None
            self.last_finished = now_ms()
            self.diagnostics = diagnostics

    def fail(self, error: str, diagnostics: Optional[CycleDiagnostics] = None) -> None:
        with self._lock:
            self.status = CycleStatus.ERROR
            self.last_error = error
            self.last_finished = now_ms()
            self.diagnostics = diagnostics


class UpdateCycle:
    """Runs the full pipeline against one store and one data source.

    Only one cycle runs at a time; `run()` and `trigger_async()` return
    without doing anything while another cycle is in flight.
    """

    def __init__(
        self,
        store,
        data_source: WeatherDataSource,
        settings: config.Settings | None = None,
        *,
        models: Sequence[ModelConfig] = MODELS,
        buckets: Optional[List[LeadTimeBucket]] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.data_source = data_source
        self.settings = settings or config.settings
        self.models = list(models)
        self.buckets = buckets or default_buckets(self.settings.bucket_inclusivity)
        validate_disjoint(self.buckets)
        self.clock = clock
        self.sleep = sleep
        self.state = CycleState()

    def run(self) -> Optional[CycleDiagnostics]:
        """Run one cycle synchronously; None when another cycle is already running."""
        if not self.state.try_start():
            logger.info("Update cycle already running; trigger ignored")
            return None
        return self._execute()

    def trigger_async(self) -> bool:
        """Start a cycle on a daemon thread; False when one is already running."""
        if not self.state.try_start():
            logger.info("Update cycle already running; trigger ignored")
            return False
        thread = threading.Thread(target=self._execute, kwargs={"reraise": False},
                                  name="skillboard-update", daemon=True)
        thread.start()
        return True

    def _execute(self, reraise: bool = True) -> Optional[CycleDiagnostics]:
        diagnostics = CycleDiagnostics()
        try:
            self._run(diagnostics)
        except Exception as exc:
            logger.exception("Update cycle failed", extra={"error": str(exc)})
            self.state.fail(str(exc), diagnostics)
            if reraise:
                raise
            return None
        self.state.finish(diagnostics)
        logger.info("Update cycle complete", extra=diagnostics.as_dict())
        return diagnostics

    def _run(self, diagnostics: CycleDiagnostics) -> None:
        s = self.settings
        now = self.clock()
        issue_time = floor_hour(now)
        logger.info("Starting update cycle", extra={"issue_time": issue_time, "models": len(self.models)})

        observations = refresh_observations(
            self.store, self.data_source, now=now, lookback_hours=s.lookback_hours
        )
        diagnostics.observations_stored = len(observations)

        succeeded = self.fetch_forecasts(issue_time, diagnostics)
        if succeeded:
            self.store.set_metadata(LAST_FETCH_KEY, str(issue_time))

        diagnostics.synthetic_stored = generate_synthetic_models(
            self.store, issue_time, window_days=s.synthetic_window_days, chunk_hours=s.synthetic_chunk_hours
        )

        # New records can only land in the reconciled window.
        verify_start, verify_end = observation_window(now, s.lookback_hours)
        verification = run_verification(
            self.store, chunk_hours=s.verification_chunk_hours, start=verify_start, end=verify_end
        )
        diagnostics.verifications_stored = verification.records
        diagnostics.dropped_before_issue += verification.skipped_negative_lead

        cutoff = retention_cutoff(now, s.retention_days)
        diagnostics.days_rolled_up = rollup_days(self.store, verification.days, self.buckets, not_before=cutoff)
        refresh_leaderboard_cache(self.store, self.buckets, policy=s.missing_variable_policy)

        diagnostics.pruned_rows = self.store.prune_before(cutoff)

    def fetch_forecasts(self, issue_time: int, diagnostics: CycleDiagnostics) -> List[str]:
        """Fetch and store every model in bounded batches; return the ids that succeeded."""
        s = self.settings
        batch_size = s.fetch_batch_size
        succeeded: List[str] = []
        batches = [self.models[i:i + batch_size] for i in range(0, len(self.models), batch_size)]
        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="skillboard-fetch") as pool:
            for n, batch in enumerate(batches):
                futures = [(m, pool.submit(self.data_source.fetch_model_forecast, m)) for m in batch]
                for model, future in futures:
                    try:
                        result = future.result()
                        stored = self._store_model(model, result, issue_time, diagnostics)
                    except SkillboardError as exc:
                        self._mark_unavailable(model, exc, diagnostics)
                        continue
                    except Exception as exc:
                        logger.exception("Unexpected error fetching model", extra={"model_id": model.id})
                        self._mark_unavailable(model, exc, diagnostics)
                        continue
                    self.store.delete_metadata(MODEL_UNAVAILABLE_PREFIX + model.id)
                    succeeded.append(model.id)
                    logger.info("Stored model forecast", extra={"model_id": model.id, "records": stored})
                if n < len(batches) - 1 and s.fetch_batch_pause_seconds > 0:
                    self.sleep(s.fetch_batch_pause_seconds)
        return succeeded

    def _store_model(self, model: ModelConfig, result, issue_time: int, diagnostics: CycleDiagnostics) -> int:
        normalized = normalize_forecast(model.id, result.payload, issue_time, result.api_model)
        diagnostics.dropped_before_issue += normalized.dropped_before_issue
        diagnostics.dropped_missing_primary += normalized.dropped_missing_primary
        stored = self.store.upsert_forecasts(normalized.forecasts)
        diagnostics.forecasts_stored += stored
        return stored

    def _mark_unavailable(self, model: ModelConfig, exc: Exception, diagnostics: CycleDiagnostics) -> None:
        logger.warning("Model unavailable this cycle", extra={"model_id": model.id, "error": str(exc)})
        diagnostics.models_failed[model.id] = str(exc)
        self.store.set_metadata(MODEL_UNAVAILABLE_PREFIX + model.id, str(self.clock()))


def unavailable_models(store) -> List[str]:
    """Model ids whose last fetch attempt failed."""
    return sorted(k[len(MODEL_UNAVAILABLE_PREFIX):] for k in store.metadata_with_prefix(MODEL_UNAVAILABLE_PREFIX))


_cycle: Optional[UpdateCycle] = None
_cycle_lock = threading.Lock()


def get_update_cycle() -> UpdateCycle:
    """Process-wide cycle bound to the configured store and data source."""
    global _cycle
    with _cycle_lock:
        if _cycle is None:
            _cycle = UpdateCycle(get_store(), build_data_source(config.settings), config.settings)
        return _cycle


def set_update_cycle(cycle: Optional[UpdateCycle]) -> None:
    global _cycle
    with _cycle_lock:
        _cycle = cycle
