import os
import unittest

from pydantic import ValidationError

from skillboard.config import Settings


class TestConfig(unittest.TestCase):
    def _with_env(self, name, value):
        previous = os.environ.get(name)
        os.environ[name] = value
        self.addCleanup(self._restore, name, previous)

    @staticmethod
    def _restore(name, previous):
        if previous is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = previous

    def test_settings_defaults(self):
        previous = os.environ.pop("SKILLBOARD_STATION_ID", None)
        try:
            s = Settings()
            self.assertEqual(s.station_id, "CYEG")
            self.assertEqual(s.lookback_hours, 48)
            self.assertEqual(s.fetch_batch_size, 4)
            self.assertEqual(s.retention_days, 730)
            self.assertEqual(s.bucket_inclusivity, "half_open")
            self.assertEqual(s.missing_variable_policy, "no_penalty")
        finally:
            if previous is not None:
                os.environ["SKILLBOARD_STATION_ID"] = previous

    def test_station_override_is_upper_cased(self):
        self._with_env("SKILLBOARD_STATION_ID", " kden ")
        self.assertEqual(Settings().station_id, "KDEN")

    def test_choice_fields_are_lower_cased(self):
        self._with_env("SKILLBOARD_BUCKET_INCLUSIVITY", "CLOSED")
        self._with_env("SKILLBOARD_STORE_BACKEND", "Memory")
        s = Settings()
        self.assertEqual(s.bucket_inclusivity, "closed")
        self.assertEqual(s.store_backend, "memory")

    def test_batch_size_must_be_positive(self):
        self._with_env("SKILLBOARD_FETCH_BATCH_SIZE", "0")
        with self.assertRaises(ValidationError):
            Settings()


if __name__ == "__main__":
    unittest.main()
