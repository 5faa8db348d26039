import unittest

from skillboard import rollup
from skillboard.aggregation import bucket_by_name, default_buckets
from skillboard.domain import OVERALL_SCORE, VERIFICATION_VARIABLES, StatsSource
from skillboard.models import DAY_MS, HOUR_MS, VerificationRecord, parse_utc
from skillboard.storage import InMemoryVerificationStore

DAY_ONE = parse_utc("2024-03-10T06:00:00Z")
DAY_TWO = DAY_ONE + DAY_MS


def _rec(model, variable, valid, lead, abs_error):
    return VerificationRecord(
        model_id=model,
        variable=variable,
        valid_time=valid,
        issue_time=valid - int(lead * HOUR_MS),
        lead_time_hours=lead,
        forecast_value=abs_error,
        observed_value=0.0,
        error=abs_error,
        absolute_error=abs_error,
        squared_error=abs_error * abs_error,
        percentage_error=None,
        bias=abs_error,
    )


def _seed(store):
    store.upsert_verifications([
        _rec("gfs", "temperature_2m", DAY_ONE, 6.0, 1.0),
        _rec("gfs", "temperature_2m", DAY_TWO, 12.0, 2.0),
        _rec("gfs", "temperature_2m", DAY_TWO, 30.0, 9.0),
        _rec("gem", "temperature_2m", DAY_ONE, 6.0, 3.0),
        _rec("gem", "temperature_2m", DAY_TWO + HOUR_MS, 23.0, 3.0),
        _rec("gem", "wind_speed_10m", DAY_TWO, 6.0, 2.0),
    ])


class TestRollup(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryVerificationStore()
        self.buckets = default_buckets()
        self.bucket = bucket_by_name("24h", self.buckets)
        _seed(self.store)

    def test_rollup_matches_live_scan(self):
        self.assertEqual(rollup.rollup_days(self.store, ["2024-03-10", "2024-03-11", "2024-03-10"], self.buckets), 2)
        from_rollup = rollup.bucket_stats(self.store, self.bucket, source=StatsSource.ROLLUP)
        live = rollup.bucket_stats(self.store, self.bucket, source=StatsSource.LIVE)
        self.assertEqual(
            [(s.model_id, s.variable, s.n, round(s.mae, 9)) for s in from_rollup],
            [(s.model_id, s.variable, s.n, round(s.mae, 9)) for s in live],
        )
        gfs = [s for s in live if s.model_id == "gfs"][0]
        self.assertEqual(gfs.n, 2)
        self.assertEqual(gfs.mae, 1.5)

    def test_rollup_day_replaces_rows(self):
        rollup.rollup_day(self.store, "2024-03-10", self.buckets)
        self.store.upsert_verifications([_rec("gfs", "temperature_2m", DAY_ONE, 6.0, 5.0)])
        rollup.rollup_day(self.store, "2024-03-10", self.buckets)
        stats = rollup.bucket_stats(self.store, self.bucket, variable="temperature_2m", model_id="gfs")
        self.assertEqual(stats[0].n, 1)
        self.assertEqual(stats[0].mae, 5.0)

    def test_missing_days(self):
        rollup.rollup_day(self.store, "2024-03-10", self.buckets)
        self.assertEqual(rollup.missing_rollup_days(self.store), ["2024-03-11"])

    def test_days_before_cutoff_keep_their_rows(self):
        rollup.rollup_days(self.store, ["2024-03-10", "2024-03-11"], self.buckets)
        self.store.prune_before(DAY_ONE + 17 * 60 * 1000)
        cutoff = DAY_TWO - 6 * HOUR_MS
        rolled = rollup.rollup_days(self.store, ["2024-03-10", "2024-03-11"], self.buckets, not_before=cutoff)
        self.assertEqual(rolled, 1)
        stats = rollup.bucket_stats(self.store, self.bucket, variable="temperature_2m", model_id="gfs")
        self.assertEqual(stats[0].n, 2)


class TestBackfill(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryVerificationStore()
        self.buckets = default_buckets()
        _seed(self.store)
        self.sleeps = []
        self._orig_sleep = rollup.time.sleep
        rollup.time.sleep = self.sleeps.append

    def tearDown(self):
        rollup.time.sleep = self._orig_sleep

    def test_backfill_runs_once_and_pauses_between_days(self):
        days = rollup.backfill_missing_days(self.store, self.buckets, pause_seconds=0.25)
        self.assertEqual(days, ["2024-03-10", "2024-03-11"])
        self.assertEqual(self.sleeps, [0.25])
        self.assertIsNotNone(self.store.get_metadata(rollup.BACKFILL_MARKER))
        self.assertEqual(rollup.missing_rollup_days(self.store), [])

        self.store.upsert_verifications([_rec("gfs", "temperature_2m", DAY_TWO + DAY_MS, 6.0, 1.0)])
        self.assertEqual(rollup.backfill_missing_days(self.store, self.buckets), [])
        self.assertEqual(rollup.backfill_missing_days(self.store, self.buckets, force=True), ["2024-03-12"])


class TestLeaderboardCache(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryVerificationStore()
        self.buckets = default_buckets()
        self.bucket = bucket_by_name("24h", self.buckets)
        _seed(self.store)
        rollup.rollup_days(self.store, self.store.verification_days(), self.buckets)

    def test_miss_writes_through(self):
        self.assertIsNone(self.store.get_leaderboard_cache("24h", OVERALL_SCORE))
        rows = rollup.leaderboard(self.store, self.bucket)
        cached = self.store.get_leaderboard_cache("24h", OVERALL_SCORE)
        self.assertEqual([r["model"] for r in cached], [r.model for r in rows])

    def test_cached_rows_are_served_until_refresh(self):
        first = rollup.leaderboard(self.store, self.bucket, "temperature_2m")
        self.store.upsert_verifications([_rec("ecmwf", "temperature_2m", DAY_ONE, 6.0, 0.1)])
        rollup.rollup_day(self.store, "2024-03-10", self.buckets)
        self.assertEqual(rollup.leaderboard(self.store, self.bucket, "temperature_2m"), first)

        rollup.refresh_leaderboard_cache(self.store, self.buckets)
        refreshed = rollup.leaderboard(self.store, self.bucket, "temperature_2m")
        self.assertEqual(refreshed[0].model, "ecmwf")

    def test_live_bypasses_cache(self):
        self.store.put_leaderboard_cache("24h", OVERALL_SCORE, [], 0)
        rows = rollup.leaderboard(self.store, self.bucket, source="live")
        self.assertEqual([r.model for r in rows], ["gfs", "gem"])

    def test_refresh_covers_every_bucket_and_variable(self):
        count = rollup.refresh_leaderboard_cache(self.store, self.buckets)
        self.assertEqual(count, len(self.buckets) * (1 + len(VERIFICATION_VARIABLES)))
        self.assertEqual(self.store.get_leaderboard_cache("16day", "visibility"), [])
        overall = self.store.get_leaderboard_cache("24h", OVERALL_SCORE)
        self.assertEqual(overall[0]["model"], "gfs")


if __name__ == "__main__":
    unittest.main()
