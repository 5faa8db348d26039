"""Daily rollups, startup backfill and the leaderboard cache."""

from __future__ import annotations

import time
from typing import Iterable, List, Optional, Sequence

from skillboard.aggregation import LeadTimeBucket, accumulate, aggregate_accumulators, aggregate_records
from skillboard.domain import (
    OVERALL_SCORE,
    VERIFICATION_VARIABLES,
    LeaderboardRow,
    MissingVariablePolicy,
    ModelVariableStats,
    StatsSource,
)
from skillboard.models import DailyStatAccumulator, day_bounds, now_ms
from skillboard.scoring import leaderboard_rows
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="rollup")

BACKFILL_MARKER = "backfill_daily_stats_v1"


def rollup_day(store, day: str, buckets: Sequence[LeadTimeBucket]) -> int:
    """Recompute every accumulator for one UTC day (by valid time) and replace the stored rows."""
    start, end = day_bounds(day)
    records = store.verifications_between(start, end)
    accumulators: List[DailyStatAccumulator] = []
    for bucket in buckets:
        accumulators.extend(accumulate(records, bucket, day=day).values())
    written = store.replace_daily_stats(day, accumulators)
    logger.debug("Rolled up day", extra={"day": day, "records": len(records), "accumulators": written})
    return written


def rollup_days(store, days: Iterable[str], buckets: Sequence[LeadTimeBucket], *,
                not_before: Optional[int] = None) -> int:
    """Roll up each distinct day; days starting before `not_before` keep their stored rows."""
    count = 0
    for day in sorted(set(days)):
        if not_before is not None and day_bounds(day)[0] < not_before:
            logger.debug("Skipping rollup for day past retention", extra={"day": day})
            continue
        rollup_day(store, day, buckets)
        count += 1
    return count


def missing_rollup_days(store) -> List[str]:
    """Days that have verification records but no rollup rows."""
    return sorted(store.verification_days() - store.rollup_days())


def backfill_missing_days(
    store,
    buckets: Sequence[LeadTimeBucket],
    pause_seconds: float = 0.05,
    *,
    force: bool = False,
) -> List[str]:
    """Roll up every day missing from the rollup table, pausing between days.

    Runs once per database unless `force` is set; completion is recorded in
    the `backfill_daily_stats_v1` metadata key.
    """
    if not force and store.get_metadata(BACKFILL_MARKER):
        logger.debug("Daily stats backfill already done")
        return []
    days = missing_rollup_days(store)
    logger.info("Backfilling daily stats", extra={"days": len(days)})
    for i, day in enumerate(days):
        rollup_day(store, day, buckets)
        if pause_seconds > 0 and i < len(days) - 1:
            time.sleep(pause_seconds)
    store.set_metadata(BACKFILL_MARKER, str(now_ms()))
    logger.info("Daily stats backfill complete", extra={"days": len(days)})
    return days


def bucket_stats(
    store,
    bucket: LeadTimeBucket,
    *,
    variable: Optional[str] = None,
    model_id: Optional[str] = None,
    source: StatsSource | str = StatsSource.ROLLUP,
) -> List[ModelVariableStats]:
    """Per-(model, variable) statistics for one bucket from rollups or a live scan."""
    if variable == OVERALL_SCORE:
        variable = None
    if StatsSource(source) == StatsSource.LIVE:
        records = store.query_verifications(
            model_id=model_id, variable=variable, min_lead=bucket.lower, max_lead=bucket.upper
        )
        return aggregate_records(records, bucket, variable=variable)
    accumulators = store.daily_stats(bucket=bucket.name, variable=variable, model_id=model_id)
    return aggregate_accumulators(accumulators, variable=variable)


def compute_leaderboard(
    store,
    bucket: LeadTimeBucket,
    variable: str = OVERALL_SCORE,
    *,
    source: StatsSource | str = StatsSource.ROLLUP,
    policy: Optional[MissingVariablePolicy | str] = None,
) -> List[LeaderboardRow]:
    stats = bucket_stats(store, bucket, variable=variable, source=source)
    return leaderboard_rows(stats, variable, policy)


def leaderboard(
    store,
    bucket: LeadTimeBucket,
    variable: str = OVERALL_SCORE,
    *,
    source: StatsSource | str = StatsSource.ROLLUP,
    policy: Optional[MissingVariablePolicy | str] = None,
) -> List[LeaderboardRow]:
    """Leaderboard rows for (bucket, variable).

    Rollup reads go through the cache; a miss computes synchronously and
    writes the result back. Live reads never touch the cache.
    """
    if StatsSource(source) == StatsSource.LIVE:
        return compute_leaderboard(store, bucket, variable, source=StatsSource.LIVE, policy=policy)
    cached = store.get_leaderboard_cache(bucket.name, variable)
    if cached is not None:
        return [LeaderboardRow(**row) for row in cached]
    rows = compute_leaderboard(store, bucket, variable, policy=policy)
    store.put_leaderboard_cache(bucket.name, variable, [r.model_dump() for r in rows], now_ms())
    logger.debug("Leaderboard cache miss filled", extra={"bucket": bucket.name, "variable": variable})
    return rows


def leaderboard_variables() -> List[str]:
    return [OVERALL_SCORE] + list(VERIFICATION_VARIABLES)


def refresh_leaderboard_cache(
    store,
    buckets: Sequence[LeadTimeBucket],
    *,
    policy: Optional[MissingVariablePolicy | str] = None,
) -> int:
    """Recompute and store every (bucket, variable) leaderboard, overall score included."""
    updated_at = now_ms()
    count = 0
    for bucket in buckets:
        for variable in leaderboard_variables():
            rows = compute_leaderboard(store, bucket, variable, policy=policy)
            store.put_leaderboard_cache(bucket.name, variable, [r.model_dump() for r in rows], updated_at)
            count += 1
    logger.info("Leaderboard cache refreshed", extra={"entries": count})
    return count
