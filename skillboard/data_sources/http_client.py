"""Shared HTTP plumbing for upstream clients: cached, retrying sessions and JSON fetches."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import requests
import requests_cache
from retry_requests import retry

from skillboard.errors import DataQualityError, UpstreamFetchError
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="data_sources/http_client")

# Only rate limits and server errors are worth retrying; other 4xx fail fast.
RETRY_STATUSES = (429, 500, 502, 503, 504)


def build_session(
    cache_name: str,
    *,
    expire_after: int = 600,
    retries: int = 3,
    backoff_factor: float = 1.0,
    backend: str = "sqlite",
) -> requests.Session:
    """Return a requests session with an HTTP cache and exponential-backoff retries."""
    cache_session = requests_cache.CachedSession(cache_name, backend=backend, expire_after=expire_after)
    return retry(
        cache_session,
        retries=retries,
        backoff_factor=backoff_factor,
        status_to_retry=RETRY_STATUSES,
    )


def get_json(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = 20.0,
) -> Any:
    """GET `url` and decode JSON, mapping failures onto the upstream error taxonomy."""
    try:
        resp = session.get(url, params=params, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        # RetryError lands here once the retry adapter gives up on 429/5xx.
        raise UpstreamFetchError(f"GET {url} failed: {exc}", retryable=True) from exc

    status_code = getattr(resp, "status_code", 200)
    if status_code in RETRY_STATUSES or status_code >= 500:
        raise UpstreamFetchError(f"GET {url} returned HTTP {status_code}", retryable=True, status_code=status_code)
    if status_code >= 400:
        raise UpstreamFetchError(f"GET {url} returned HTTP {status_code}", retryable=False, status_code=status_code)

    try:
        return resp.json()
    except ValueError as exc:
        raise DataQualityError(f"GET {url} returned a non-JSON body") from exc
