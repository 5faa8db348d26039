import math
import unittest

from skillboard.aggregation import (
    LeadTimeBucket,
    accumulate,
    aggregate_accumulators,
    aggregate_records,
    bucket_by_name,
    classify_lead_time,
    default_buckets,
    is_outlier,
    validate_disjoint,
)
from skillboard.domain import BucketInclusivity
from skillboard.models import HOUR_MS, VerificationRecord

VALID = 1_710_072_000_000


def _rec(model="gfs", variable="temperature_2m", lead=6.0, abs_error=1.0, bias=None, valid=VALID):
    return VerificationRecord(
        model_id=model,
        variable=variable,
        valid_time=valid,
        issue_time=valid - int(lead * HOUR_MS),
        lead_time_hours=lead,
        forecast_value=0.0,
        observed_value=0.0,
        error=abs_error,
        absolute_error=abs_error,
        squared_error=abs_error * abs_error,
        percentage_error=None,
        bias=abs_error if bias is None else bias,
    )


class TestBuckets(unittest.TestCase):
    def test_defaults_are_disjoint_in_both_modes(self):
        for mode in BucketInclusivity:
            validate_disjoint(default_buckets(mode))

    def test_edge_hours(self):
        half_open = default_buckets("half_open")
        closed = default_buckets("closed")
        self.assertEqual(classify_lead_time(0, half_open).name, "24h")
        self.assertEqual(classify_lead_time(24, half_open).name, "48h")
        self.assertEqual(classify_lead_time(24, closed).name, "24h")
        self.assertEqual(classify_lead_time(25, closed).name, "48h")
        self.assertEqual(classify_lead_time(383, half_open).name, "16day")
        self.assertIsNone(classify_lead_time(384, half_open))
        self.assertIsNone(classify_lead_time(-1, closed))

    def test_each_hour_lands_in_exactly_one_bucket(self):
        for mode in BucketInclusivity:
            buckets = default_buckets(mode)
            for hour in range(0, 384):
                owners = [b.name for b in buckets if b.contains(hour)]
                self.assertEqual(len(owners), 1, (mode, hour, owners))

    def test_overlap_and_duplicates_rejected(self):
        with self.assertRaises(ValueError):
            validate_disjoint([
                LeadTimeBucket("a", 0, 24, BucketInclusivity.CLOSED),
                LeadTimeBucket("b", 24, 48, BucketInclusivity.CLOSED),
            ])
        with self.assertRaises(ValueError):
            validate_disjoint([LeadTimeBucket("a", 0, 24), LeadTimeBucket("a", 24, 48)])
        with self.assertRaises(ValueError):
            validate_disjoint([LeadTimeBucket("a", 10, 10)])

    def test_bucket_by_name(self):
        buckets = default_buckets()
        self.assertEqual(bucket_by_name("72h", buckets).upper, 72)
        self.assertIsNone(bucket_by_name("90day", buckets))


class TestOutliers(unittest.TestCase):
    def test_ceiling_and_exemptions(self):
        self.assertTrue(is_outlier(_rec(abs_error=2500.0)))
        self.assertFalse(is_outlier(_rec(abs_error=2000.0)))
        self.assertFalse(is_outlier(_rec(variable="visibility", abs_error=8000.0)))
        self.assertFalse(is_outlier(_rec(variable="pressure_msl", abs_error=3000.0)))

    def test_outliers_do_not_count(self):
        bucket = bucket_by_name("24h", default_buckets())
        stats = aggregate_records([_rec(abs_error=1.0), _rec(abs_error=5000.0)], bucket)
        self.assertEqual(stats[0].n, 1)
        self.assertEqual(stats[0].mae, 1.0)


class TestAggregation(unittest.TestCase):
    def setUp(self):
        self.bucket = bucket_by_name("24h", default_buckets())
        self.records = [
            _rec(abs_error=1.0, bias=-1.0),
            _rec(abs_error=3.0, bias=3.0),
            _rec(abs_error=2.0, bias=2.0, lead=30.0),
            _rec(model="gem", abs_error=4.0),
            _rec(model="gem", variable="dew_point_2m", abs_error=0.5),
        ]

    def test_statistics(self):
        stats = {(s.model_id, s.variable): s for s in aggregate_records(self.records, self.bucket)}
        gfs = stats[("gfs", "temperature_2m")]
        self.assertEqual(gfs.n, 2)
        self.assertEqual(gfs.mae, 2.0)
        self.assertEqual(gfs.mse, 5.0)
        self.assertAlmostEqual(gfs.rmse, math.sqrt(5.0))
        self.assertEqual(gfs.bias, 1.0)
        # sample std of [1, 3] is sqrt(2); divided by sqrt(2)
        self.assertAlmostEqual(gfs.std_error, 1.0)
        self.assertIsNone(stats[("gem", "temperature_2m")].std_error)

    def test_variable_filter(self):
        stats = aggregate_records(self.records, self.bucket, variable="dew_point_2m")
        self.assertEqual([(s.model_id, s.variable) for s in stats], [("gem", "dew_point_2m")])

    def test_accumulators_agree_with_records(self):
        day_one = self.records[:2]
        day_two = self.records[3:]
        accumulators = list(accumulate(day_one, self.bucket, day="2024-03-10").values())
        accumulators += list(accumulate(day_two, self.bucket, day="2024-03-11").values())
        from_accs = aggregate_accumulators(accumulators)
        from_records = aggregate_records(day_one + day_two, self.bucket)
        self.assertEqual(len(from_accs), len(from_records))
        for a, b in zip(from_accs, from_records):
            self.assertEqual((a.model_id, a.variable, a.n), (b.model_id, b.variable, b.n))
            self.assertAlmostEqual(a.mae, b.mae)
            self.assertAlmostEqual(a.mse, b.mse)
            self.assertAlmostEqual(a.bias, b.bias)

    def test_accumulate_tags_bucket_and_day(self):
        accs = accumulate(self.records, self.bucket, day="2024-03-10")
        acc = accs[("gfs", "temperature_2m")]
        self.assertEqual((acc.day, acc.bucket, acc.count), ("2024-03-10", "24h", 2))


if __name__ == "__main__":
    unittest.main()
