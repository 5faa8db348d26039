"""Small HTTP client for the skillboard API.

Reads that share a query shape (for example "leaderboard") may overlap when a
caller switches buckets quickly; only the response to the most recent request
of each shape is applied, older ones are dropped.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from skillboard.errors import UpstreamFetchError
from skillboard.generations import RequestGenerations
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="api_client")


class SkillboardClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.generations = RequestGenerations()
        self.views: Dict[str, Any] = {}

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, params=params, headers=self._headers(), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamFetchError(f"{method} {path} failed: {exc}", retryable=True) from exc
        return resp.json()

    def fetch_view(self, shape: str, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET `path` and store it under `shape` unless a newer request of that shape started meanwhile.

        Returns the data when applied, None when the response was stale.
        """
        generation = self.generations.begin(shape)
        data = self._request("GET", path, params)
        if not self.generations.is_current(shape, generation):
            logger.debug("Dropping stale response", extra={"shape": shape, "generation": generation})
            return None
        self.views[shape] = data
        return data

    def leaderboard(self, bucket: str = "24h", variable: str = "overall_score", source: str = "rollup"):
        return self.fetch_view("leaderboard", "/api/leaderboard",
                               {"bucket": bucket, "variable": variable, "source": source})

    def model_details(self, model_id: str, bucket: str = "24h"):
        return self.fetch_view("model", f"/api/model/{model_id}", {"bucket": bucket})

    def current_conditions(self):
        return self.fetch_view("current-conditions", "/api/current-conditions")

    def history(self, limit: int = 24):
        return self.fetch_view("history", "/api/history", {"limit": limit})

    def status(self):
        return self.fetch_view("status", "/api/status")

    def taf(self):
        return self.fetch_view("taf", "/api/taf")

    def trigger_update(self) -> Dict[str, Any]:
        return self._request("POST", "/api/trigger-update")

    def backfill(self) -> Dict[str, Any]:
        return self._request("POST", "/api/admin/backfill")
