import unittest

import requests

from skillboard.data_sources import http_client
from skillboard.errors import DataQualityError, UpstreamFetchError


class DummyResp:
    def __init__(self, payload=None, status_code=200, bad_json=False):
        self._payload = payload
        self.status_code = status_code
        self._bad_json = bad_json

    def json(self):
        if self._bad_json:
            raise ValueError("Expecting value")
        return self._payload


def _session(resp=None, exc=None):
    def get(*args, **kwargs):
        if exc is not None:
            raise exc
        return resp

    return type("S", (), {"get": staticmethod(get)})()


class TestGetJson(unittest.TestCase):
    def test_returns_decoded_body(self):
        self.assertEqual(http_client.get_json(_session(DummyResp({"ok": 1})), "https://x"), {"ok": 1})

    def test_rate_limit_and_server_errors_are_retryable(self):
        for status in (429, 500, 503):
            with self.assertRaises(UpstreamFetchError) as ctx:
                http_client.get_json(_session(DummyResp({}, status_code=status)), "https://x")
            self.assertTrue(ctx.exception.retryable)
            self.assertEqual(ctx.exception.status_code, status)

    def test_client_errors_are_not_retryable(self):
        with self.assertRaises(UpstreamFetchError) as ctx:
            http_client.get_json(_session(DummyResp({}, status_code=404)), "https://x")
        self.assertFalse(ctx.exception.retryable)

    def test_transport_errors(self):
        with self.assertRaises(UpstreamFetchError) as ctx:
            http_client.get_json(_session(exc=requests.ConnectionError("refused")), "https://x")
        self.assertTrue(ctx.exception.retryable)

    def test_non_json_body(self):
        with self.assertRaises(DataQualityError):
            http_client.get_json(_session(DummyResp(bad_json=True)), "https://x")


class TestBuildSession(unittest.TestCase):
    def test_session_is_cached_and_retrying(self):
        session = http_client.build_session("skillboard_test_cache", expire_after=1, retries=1, backoff_factor=0, backend="memory")
        self.assertIsInstance(session, requests.Session)
        self.assertTrue(hasattr(session, "cache"))


if __name__ == "__main__":
    unittest.main()
