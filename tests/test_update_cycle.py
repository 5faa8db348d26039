import time
import unittest

from skillboard import update_cycle
from skillboard.aggregation import default_buckets
from skillboard.config import Settings
from skillboard.data_sources import CallableWeatherDataSource, ModelFetchResult, StationFetchResult
from skillboard.domain import MODELS, OVERALL_SCORE, CycleStatus
from skillboard.errors import GroundTruthUnavailableError, UpstreamFetchError
from skillboard.models import AVERAGE_MODEL_ID, DAY_MS, HOUR_MS, Forecast, Observation, parse_utc
from skillboard.rollup import rollup_days
from skillboard.verifier import run_verification
from skillboard.storage import InMemoryVerificationStore

NOW = parse_utc("2024-03-10T12:10:00Z")
NOON = parse_utc("2024-03-10T12:00:00Z")
REPORTS = ["METAR CYEG 101200Z 27010KT 15SM FEW040 05/03 A2992"]
TEMPERATURES = {"gfs": 6.0, "ecmwf": 8.0, "gem": 4.0}


def _payload(temperature):
    return {
        "hourly": {
            "time": ["2024-03-10T11:00", "2024-03-10T12:00", "2024-03-10T13:00"],
            "temperature_2m": [temperature, temperature, temperature],
        }
    }


class TestUpdateCycle(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryVerificationStore()
        self.models = [m for m in MODELS if m.id in TEMPERATURES]
        self.failing = {"gem"}
        self.sleeps = []
        self.settings = Settings(
            fetch_batch_size=2,
            fetch_batch_pause_seconds=0.5,
            lookback_hours=4,
            bucket_inclusivity="half_open",
            missing_variable_policy="no_penalty",
        )
        self.source = CallableWeatherDataSource(
            model_forecast=self._fetch_model,
            station_reports=lambda: StationFetchResult(reports=list(REPORTS), source="test"),
            reanalysis=dict,
            taf=lambda: None,
        )

    def _fetch_model(self, config):
        if config.id in self.failing:
            raise UpstreamFetchError(f"{config.id}: all forecast layers failed")
        return ModelFetchResult(
            model_id=config.id, payload=_payload(TEMPERATURES[config.id]), api_model=config.api_model, layer="test"
        )

    def _cycle(self, source=None):
        return update_cycle.UpdateCycle(
            self.store,
            source or self.source,
            self.settings,
            models=self.models,
            clock=lambda: NOW,
            sleep=self.sleeps.append,
        )

    def test_full_cycle(self):
        diagnostics = self._cycle().run()

        self.assertEqual(diagnostics.observations_stored, 1)
        self.assertEqual(diagnostics.forecasts_stored, 4)
        self.assertEqual(diagnostics.dropped_before_issue, 2)
        self.assertEqual(diagnostics.synthetic_stored, 4)
        self.assertEqual(diagnostics.days_rolled_up, 1)
        self.assertIn("gem", diagnostics.models_failed)
        self.assertEqual(self.store.get_metadata(update_cycle.LAST_FETCH_KEY), str(NOON))

        rows = self.store.get_leaderboard_cache("24h", OVERALL_SCORE)
        self.assertEqual(rows[0]["model"], "gfs")
        self.assertIn(AVERAGE_MODEL_ID, [r["model"] for r in rows])
        self.assertNotIn("gem", [r["model"] for r in rows])

    def test_failed_model_is_flagged_then_cleared(self):
        self._cycle().run()
        self.assertEqual(update_cycle.unavailable_models(self.store), ["gem"])
        self.assertEqual(self.store.get_metadata("model_unavailable_gem"), str(NOW))

        self.failing = set()
        self._cycle().run()
        self.assertEqual(update_cycle.unavailable_models(self.store), [])

    def test_unexpected_model_errors_are_isolated(self):
        def explode(config):
            raise RuntimeError("boom")

        source = CallableWeatherDataSource(
            model_forecast=explode,
            station_reports=self.source.station_reports,
            reanalysis=dict,
            taf=lambda: None,
        )
        cycle = self._cycle(source)
        diagnostics = cycle.run()
        self.assertEqual(sorted(diagnostics.models_failed), ["ecmwf", "gem", "gfs"])
        self.assertIsNone(self.store.get_metadata(update_cycle.LAST_FETCH_KEY))
        self.assertEqual(cycle.state.status, CycleStatus.IDLE)

    def test_batches_pause_between_but_not_after(self):
        self._cycle().run()
        self.assertEqual(self.sleeps, [0.5])

    def test_missing_ground_truth_aborts_cycle(self):
        def no_reports():
            raise GroundTruthUnavailableError("No station report source available for CYEG")

        source = CallableWeatherDataSource(
            model_forecast=self._fetch_model, station_reports=no_reports, reanalysis=dict, taf=lambda: None
        )
        cycle = self._cycle(source)
        with self.assertRaises(GroundTruthUnavailableError):
            cycle.run()
        self.assertEqual(cycle.state.status, CycleStatus.ERROR)
        self.assertIn("CYEG", cycle.state.last_error)
        self.assertEqual(self.store.forecast_valid_range(), None)

        # a later successful run recovers
        cycle.data_source = self.source
        self.assertIsNotNone(cycle.run())
        self.assertEqual(cycle.state.status, CycleStatus.IDLE)
        self.assertIsNone(cycle.state.last_error)

    def _seed_day(self, day_start):
        self.store.upsert_forecasts([
            Forecast(model_id="gfs", issue_time=day_start - 6 * HOUR_MS, valid_time=day_start + h * HOUR_MS,
                     temperature_2m=1.0)
            for h in range(24)
        ])
        self.store.replace_observations(day_start, day_start + DAY_MS, [
            Observation(obs_time=day_start + h * HOUR_MS, temperature=0.0) for h in range(24)
        ])

    def _day_count(self, day):
        return sum(a.count for a in self.store.daily_stats(variable="temperature_2m", model_id="gfs")
                   if a.day == day)

    def test_cycle_only_verifies_the_reconciled_window(self):
        old_day = parse_utc("2024-03-08T00:00:00Z")
        self._seed_day(old_day)
        diagnostics = self._cycle().run()
        self.assertEqual(diagnostics.days_rolled_up, 1)
        self.assertEqual(self.store.verifications_between(old_day, old_day + DAY_MS), [])
        self.assertNotIn("2024-03-08", self.store.rollup_days())

    def test_retention_cutoff_is_day_aligned(self):
        self.assertEqual(update_cycle.retention_cutoff(NOW, 1), parse_utc("2024-03-09T00:00:00Z"))
        self.assertEqual(update_cycle.retention_cutoff(NOW, 0), parse_utc("2024-03-10T00:00:00Z"))

    def test_pruning_keeps_daily_totals(self):
        day = parse_utc("2024-03-09T00:00:00Z")
        self._seed_day(day)
        run_verification(self.store)
        rollup_days(self.store, self.store.verification_days(), default_buckets())
        self.assertEqual(self._day_count("2024-03-09"), 24)

        self.settings.retention_days = 1
        self._cycle().run()
        self._cycle().run()
        self.assertEqual(len(self.store.verifications_between(day, day + DAY_MS)), 24)
        self.assertEqual(self._day_count("2024-03-09"), 24)

        self.settings.retention_days = 0
        self._cycle().run()
        self.assertEqual(self.store.verifications_between(day, day + DAY_MS), [])
        self.assertEqual(self._day_count("2024-03-09"), 24)

    def test_single_flight(self):
        cycle = self._cycle()
        self.assertTrue(cycle.state.try_start())
        self.assertIsNone(cycle.run())
        self.assertFalse(cycle.trigger_async())
        self.assertIsNone(self.store.latest_observation())

    def test_trigger_async_runs_in_background(self):
        cycle = self._cycle()
        self.assertTrue(cycle.trigger_async())
        deadline = time.monotonic() + 5
        while cycle.state.status == CycleStatus.RUNNING and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(cycle.state.status, CycleStatus.IDLE)
        self.assertIsNotNone(self.store.latest_observation())

    def test_overlapping_buckets_are_rejected(self):
        from skillboard.aggregation import LeadTimeBucket
        from skillboard.domain import BucketInclusivity

        with self.assertRaises(ValueError):
            update_cycle.UpdateCycle(
                self.store,
                self.source,
                self.settings,
                buckets=[
                    LeadTimeBucket("a", 0, 24, BucketInclusivity.CLOSED),
                    LeadTimeBucket("b", 24, 48, BucketInclusivity.CLOSED),
                ],
            )


class TestCycleSingleton(unittest.TestCase):
    def tearDown(self):
        update_cycle.set_update_cycle(None)

    def test_set_and_get(self):
        sentinel = object()
        update_cycle.set_update_cycle(sentinel)
        self.assertIs(update_cycle.get_update_cycle(), sentinel)


if __name__ == "__main__":
    unittest.main()
