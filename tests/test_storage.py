import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from skillboard.models import (
    DAY_MS,
    HOUR_MS,
    DailyStatAccumulator,
    Forecast,
    Observation,
    VerificationRecord,
    parse_utc,
)
from skillboard.storage import InMemoryVerificationStore, SqlVerificationStore, apply_migrations
from skillboard.storage.migrations import MIGRATIONS, applied_versions

T0 = parse_utc("2024-03-10T00:00:00Z")


def _rec(model="gfs", variable="temperature_2m", valid=T0, lead=6.0, abs_error=1.0):
    return VerificationRecord(
        model_id=model,
        variable=variable,
        valid_time=valid,
        issue_time=valid - int(lead * HOUR_MS),
        lead_time_hours=lead,
        forecast_value=1.0 + abs_error,
        observed_value=1.0,
        error=abs_error,
        absolute_error=abs_error,
        squared_error=abs_error * abs_error,
        percentage_error=None,
        bias=abs_error,
    )


class _StoreContract:
    """Behaviour every backend must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_observations_replace_window(self):
        self.store.replace_observations(T0, T0 + 3 * HOUR_MS, [
            Observation(obs_time=T0, temperature=1.0),
            Observation(obs_time=T0 + HOUR_MS, temperature=2.0, weather_codes=["RA"]),
            Observation(obs_time=T0 + 2 * HOUR_MS, temperature=3.0),
        ])
        self.store.replace_observations(T0 + HOUR_MS, T0 + 3 * HOUR_MS, [
            Observation(obs_time=T0 + HOUR_MS, temperature=5.0, report_type="SPECI"),
        ])
        found = self.store.observations_between(T0, T0 + DAY_MS)
        self.assertEqual([o.obs_time for o in found], [T0, T0 + HOUR_MS])
        self.assertEqual(found[1].temperature, 5.0)
        self.assertEqual(found[1].weather_codes, [])
        self.assertEqual(self.store.latest_observation().report_type, "SPECI")
        self.assertEqual([o.obs_time for o in self.store.recent_observations(5)], [T0 + HOUR_MS, T0])

    def test_observation_nulls_survive(self):
        obs = Observation(obs_time=T0, temperature=None, wind_variable=True, era_rain_amt=0.0)
        self.store.replace_observations(T0, T0 + HOUR_MS, [obs])
        self.assertEqual(self.store.latest_observation(), obs)

    def test_forecast_upsert_and_range(self):
        self.assertIsNone(self.store.forecast_valid_range())
        f = Forecast(model_id="gfs", issue_time=T0, valid_time=T0 + HOUR_MS, temperature_2m=1.0)
        self.store.upsert_forecasts([f])
        f.temperature_2m = 4.0
        self.store.upsert_forecasts([f, Forecast(model_id="gem", issue_time=T0, valid_time=T0 + 5 * HOUR_MS)])
        self.assertEqual(self.store.forecast_valid_range(), (T0 + HOUR_MS, T0 + 5 * HOUR_MS))
        found = self.store.forecasts_between(T0, T0 + 2 * HOUR_MS)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].temperature_2m, 4.0)
        self.assertIsNone(found[0].dew_point_2m)

    def test_verification_upsert_is_keyed(self):
        self.store.upsert_verifications([_rec(abs_error=1.0), _rec(lead=30.0)])
        self.store.upsert_verifications([_rec(abs_error=2.0)])
        everything = self.store.query_verifications()
        self.assertEqual(len(everything), 2)
        short = self.store.query_verifications(model_id="gfs", variable="temperature_2m", min_lead=0, max_lead=24)
        self.assertEqual([r.absolute_error for r in short], [2.0])
        self.assertEqual(short[0], _rec(abs_error=2.0))
        self.assertEqual(len(self.store.query_verifications(min_lead=30, max_lead=30)), 1)

    def test_verification_days(self):
        self.store.upsert_verifications([_rec(valid=T0 + HOUR_MS), _rec(valid=T0 + DAY_MS + 23 * HOUR_MS)])
        self.assertEqual(self.store.verification_days(), {"2024-03-10", "2024-03-11"})
        self.assertEqual(len(self.store.verifications_between(T0, T0 + DAY_MS)), 1)

    def test_metadata(self):
        self.assertIsNone(self.store.get_metadata("last_forecast_fetch"))
        self.store.set_metadata("model_unavailable_gfs", "1")
        self.store.set_metadata("model_unavailable_gem", "2")
        self.store.set_metadata("model_unavailable_gem", "3")
        self.store.set_metadata("last_forecast_fetch", "4")
        self.assertEqual(
            self.store.metadata_with_prefix("model_unavailable_"),
            {"model_unavailable_gfs": "1", "model_unavailable_gem": "3"},
        )
        self.store.delete_metadata("model_unavailable_gfs")
        self.store.delete_metadata("never-set")
        self.assertIsNone(self.store.get_metadata("model_unavailable_gfs"))

    def test_daily_stats_replace_by_day(self):
        acc = DailyStatAccumulator.empty("2024-03-10", "gfs", "temperature_2m", "24h").observe(_rec())
        other = DailyStatAccumulator.empty("2024-03-11", "gfs", "temperature_2m", "24h").observe(_rec())
        self.store.replace_daily_stats("2024-03-10", [acc])
        self.store.replace_daily_stats("2024-03-11", [other])
        self.store.replace_daily_stats("2024-03-10", [acc.observe(_rec(abs_error=3.0))])
        rows = self.store.daily_stats(bucket="24h", variable="temperature_2m")
        self.assertEqual(len(rows), 2)
        replaced = [r for r in rows if r.day == "2024-03-10"][0]
        self.assertEqual(replaced.count, 2)
        self.assertEqual(replaced.sum_abs_error_sq, 10.0)
        self.assertEqual(self.store.rollup_days(), {"2024-03-10", "2024-03-11"})
        self.assertEqual(self.store.daily_stats(model_id="gem"), [])

    def test_leaderboard_cache(self):
        self.assertIsNone(self.store.get_leaderboard_cache("24h", "overall_score"))
        self.store.put_leaderboard_cache("24h", "overall_score", [], 1)
        self.assertEqual(self.store.get_leaderboard_cache("24h", "overall_score"), [])
        self.store.put_leaderboard_cache("24h", "overall_score", [{"model": "gfs", "avg_mae": 0.5}], 2)
        self.assertEqual(self.store.get_leaderboard_cache("24h", "overall_score"), [{"model": "gfs", "avg_mae": 0.5}])

    def test_prune_before(self):
        self.store.replace_observations(T0, T0 + 2 * HOUR_MS, [
            Observation(obs_time=T0), Observation(obs_time=T0 + HOUR_MS),
        ])
        self.store.upsert_forecasts([Forecast(model_id="gfs", issue_time=T0, valid_time=T0)])
        self.store.upsert_verifications([_rec(valid=T0), _rec(valid=T0 + HOUR_MS)])
        self.store.set_metadata("keep", "1")
        removed = self.store.prune_before(T0 + HOUR_MS)
        self.assertEqual(removed, 3)
        self.assertEqual(len(self.store.recent_observations(10)), 1)
        self.assertEqual(self.store.get_metadata("keep"), "1")

    def test_clear(self):
        self.store.set_metadata("k", "v")
        self.store.upsert_verifications([_rec()])
        self.store.clear()
        self.assertIsNone(self.store.get_metadata("k"))
        self.assertEqual(self.store.query_verifications(), [])


class TestInMemoryVerificationStore(_StoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryVerificationStore()

    def test_returned_records_are_copies(self):
        self.store.replace_observations(T0, T0 + HOUR_MS, [Observation(obs_time=T0, weather_codes=["RA"])])
        self.store.latest_observation().weather_codes.append("SN")
        self.assertEqual(self.store.latest_observation().weather_codes, ["RA"])


class TestSqlVerificationStore(_StoreContract, unittest.TestCase):
    def make_store(self):
        return SqlVerificationStore.from_url("sqlite://")


class TestMigrations(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )

    def test_apply_is_idempotent(self):
        first = apply_migrations(self.engine)
        self.assertEqual(first, [m.version for m in MIGRATIONS])
        self.assertEqual(apply_migrations(self.engine), [])
        self.assertEqual(applied_versions(self.engine), first)

    def test_upgrades_from_older_schema(self):
        apply_migrations(self.engine, MIGRATIONS[:2])
        with self.engine.begin() as conn:
            conn.execute(text(
                "INSERT INTO daily_stats (day, model_id, variable, bucket, sum_abs_error, sum_sq_error, sum_bias, count) "
                "VALUES ('2024-03-10', 'gfs', 'temperature_2m', '24h', 1.0, 1.0, 1.0, 1)"
            ))
        store = SqlVerificationStore(self.engine)
        rows = store.daily_stats()
        self.assertEqual(rows[0].sum_abs_error_sq, 0.0)
        self.assertEqual(applied_versions(self.engine), [m.version for m in MIGRATIONS])


if __name__ == "__main__":
    unittest.main()
