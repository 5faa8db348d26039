import unittest

import requests

from skillboard.api_client import SkillboardClient
from skillboard.errors import UpstreamFetchError
from skillboard.generations import RequestGenerations


class DummyResp:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self):
        self.calls = []
        self.on_request = None
        self.status_code = 200

    def request(self, method, url, params=None, headers=None, timeout=None):
        self.calls.append((method, url, params, headers))
        if self.on_request is not None:
            hook, self.on_request = self.on_request, None
            hook()
        return DummyResp({"url": url, "params": params}, status_code=self.status_code)


class TestRequestGenerations(unittest.TestCase):
    def test_only_latest_is_current(self):
        gens = RequestGenerations()
        first = gens.begin("leaderboard")
        second = gens.begin("leaderboard")
        other = gens.begin("history")
        self.assertFalse(gens.is_current("leaderboard", first))
        self.assertTrue(gens.is_current("leaderboard", second))
        self.assertTrue(gens.is_current("history", other))
        self.assertEqual(gens.latest("leaderboard"), 2)
        self.assertEqual(gens.latest("status"), 0)


class TestSkillboardClient(unittest.TestCase):
    def setUp(self):
        self.session = FakeSession()
        self.client = SkillboardClient("http://localhost:8000/", api_key="k", session=self.session)

    def test_leaderboard_request(self):
        data = self.client.leaderboard(bucket="72h")
        method, url, params, headers = self.session.calls[0]
        self.assertEqual((method, url), ("GET", "http://localhost:8000/api/leaderboard"))
        self.assertEqual(params, {"bucket": "72h", "variable": "overall_score", "source": "rollup"})
        self.assertEqual(headers, {"X-API-Key": "k"})
        self.assertEqual(self.client.views["leaderboard"], data)

    def test_stale_response_is_dropped(self):
        newer = {}
        self.session.on_request = lambda: newer.setdefault("data", self.client.leaderboard(bucket="48h"))
        stale = self.client.leaderboard(bucket="24h")
        self.assertIsNone(stale)
        self.assertEqual(self.client.views["leaderboard"]["params"]["bucket"], "48h")
        self.assertEqual(newer["data"]["params"]["bucket"], "48h")

    def test_different_shapes_do_not_interfere(self):
        self.session.on_request = lambda: self.client.status()
        self.assertIsNotNone(self.client.history(limit=5))
        self.assertIn("status", self.client.views)

    def test_errors_map_to_upstream_error(self):
        self.session.status_code = 503
        with self.assertRaises(UpstreamFetchError):
            self.client.trigger_update()

    def test_posts(self):
        self.client.trigger_update()
        self.client.backfill()
        self.assertEqual([c[0] for c in self.session.calls], ["POST", "POST"])
        self.assertTrue(self.session.calls[1][1].endswith("/api/admin/backfill"))

    def test_no_key_no_header(self):
        client = SkillboardClient("http://localhost:8000", session=self.session)
        client.taf()
        self.assertEqual(self.session.calls[-1][3], {})


if __name__ == "__main__":
    unittest.main()
