"""Shared protocol for verification storage backends."""

from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from skillboard.models import DailyStatAccumulator, Forecast, Observation, VerificationRecord


class VerificationStore(Protocol):
    """Protocol for anything that persists observations, forecasts and scores.

    Time ranges are half-open `[start, end)` in epoch milliseconds. Writes are
    upserts by natural key; payloads come back with the same null pattern
    they were written with.
    """

    # observations
    def replace_observations(self, start: int, end: int, observations: Iterable[Observation]) -> int:
        """Drop observations in `[start, end)` and store `observations` in their place."""

    def latest_observation(self) -> Optional[Observation]:
        """Return the most recent observation, if any."""

    def recent_observations(self, limit: int) -> List[Observation]:
        """Return up to `limit` observations, newest first."""

    def observations_between(self, start: int, end: int) -> List[Observation]:
        """Return observations with `start <= obs_time < end`, oldest first."""

    # forecasts
    def upsert_forecasts(self, forecasts: Iterable[Forecast]) -> int:
        """Insert or overwrite forecasts by id; return the number written."""

    def forecasts_between(self, start: int, end: int) -> List[Forecast]:
        """Return forecasts with `start <= valid_time < end`."""

    def forecast_valid_range(self) -> Optional[Tuple[int, int]]:
        """Return (min, max) valid_time across stored forecasts."""

    # verifications
    def upsert_verifications(self, records: Iterable[VerificationRecord]) -> int:
        """Insert or overwrite verification records by key."""

    def verifications_between(self, start: int, end: int) -> List[VerificationRecord]:
        """Return records with `start <= valid_time < end`."""

    def query_verifications(
        self,
        *,
        model_id: Optional[str] = None,
        variable: Optional[str] = None,
        min_lead: Optional[float] = None,
        max_lead: Optional[float] = None,
    ) -> List[VerificationRecord]:
        """Return records matching the filters (lead bounds inclusive)."""

    def verification_days(self) -> Set[str]:
        """Distinct UTC days (by valid_time) that have verification records."""

    # metadata
    def get_metadata(self, key: str) -> Optional[str]:
        """Return a metadata value or None."""

    def set_metadata(self, key: str, value: str) -> None:
        """Create or overwrite a metadata value."""

    def delete_metadata(self, key: str) -> None:
        """Remove a metadata key without raising if it is absent."""

    def metadata_with_prefix(self, prefix: str) -> Dict[str, str]:
        """Return every metadata entry whose key starts with `prefix`."""

    # daily rollups
    def replace_daily_stats(self, day: str, accumulators: Iterable[DailyStatAccumulator]) -> int:
        """Replace all accumulators stored for `day`."""

    def daily_stats(
        self,
        *,
        bucket: Optional[str] = None,
        variable: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> List[DailyStatAccumulator]:
        """Return stored accumulators matching the filters."""

    def rollup_days(self) -> Set[str]:
        """Distinct days present in the rollup table."""

    # leaderboard cache
    def get_leaderboard_cache(self, bucket: str, variable: str) -> Optional[List[dict]]:
        """Return cached leaderboard rows, or None on a miss."""

    def put_leaderboard_cache(self, bucket: str, variable: str, rows: List[dict], updated_at: int) -> None:
        """Store leaderboard rows for (bucket, variable)."""

    # retention
    def prune_before(self, cutoff: int) -> int:
        """Delete observations, forecasts and verifications older than `cutoff`."""

    def clear(self) -> None:
        """Remove everything (tests and admin resets)."""
