"""SQLAlchemy-backed verification store (SQLite by default, Postgres in production).

Observations and forecasts are stored as JSON documents next to their key
columns so that nullable fields survive a round trip untouched. Verification
records and daily accumulators are stored as plain columns for SQL-side
filtering. Upserts use `INSERT ... ON CONFLICT DO UPDATE`, which both SQLite
(3.24+) and Postgres understand.
"""

from __future__ import annotations

import json
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from skillboard.models import (
    DAY_MS,
    DailyStatAccumulator,
    Forecast,
    Observation,
    VerificationRecord,
    day_of,
)
from skillboard.storage.base import VerificationStore
from skillboard.storage.migrations import apply_migrations
from utils.logging_utils import get_tagged_logger, mask_db_url

logger = get_tagged_logger(__name__, tag="storage/sql_store")

_VERIFICATION_COLUMNS = (
    "key", "model_id", "variable", "valid_time", "issue_time", "lead_time_hours",
    "forecast_value", "observed_value", "error", "absolute_error", "squared_error",
    "percentage_error", "bias",
)
_DAILY_COLUMNS = (
    "day", "model_id", "variable", "bucket",
    "sum_abs_error", "sum_sq_error", "sum_bias", "sum_abs_error_sq", "count",
)

_UPSERT_VERIFICATION = text(
    f"""
    INSERT INTO verifications ({", ".join(_VERIFICATION_COLUMNS)})
    VALUES ({", ".join(":" + c for c in _VERIFICATION_COLUMNS)})
    ON CONFLICT (key) DO UPDATE SET
    {", ".join(f"{c} = excluded.{c}" for c in _VERIFICATION_COLUMNS if c != "key")}
    """
)
_UPSERT_FORECAST = text(
    """
    INSERT INTO forecasts (id, model_id, issue_time, valid_time, data)
    VALUES (:id, :model_id, :issue_time, :valid_time, :data)
    ON CONFLICT (id) DO UPDATE SET data = excluded.data
    """
)
_UPSERT_METADATA = text(
    """
    INSERT INTO metadata (key, value) VALUES (:key, :value)
    ON CONFLICT (key) DO UPDATE SET value = excluded.value
    """
)
_UPSERT_CACHE = text(
    """
    INSERT INTO leaderboard_cache (bucket, variable, data, updated_at)
    VALUES (:bucket, :variable, :data, :updated_at)
    ON CONFLICT (bucket, variable) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
    """
)


class SqlVerificationStore(VerificationStore):
    """Persist verification state through a SQLAlchemy engine."""

    def __init__(self, engine: Engine, *, migrate: bool = True) -> None:
        self.engine = engine
        if migrate:
            apply_migrations(engine)

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "SqlVerificationStore":
        """Create an engine from a URL and build the store.

        In-memory SQLite URLs share one connection so every session sees the
        same database.
        """
        engine_kwargs: dict = {"future": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        logger.info("Connecting SQL store", extra={"db_url": mask_db_url(database_url)})
        engine = create_engine(database_url, **engine_kwargs)
        return cls(engine, **kwargs)

    # observations

    def replace_observations(self, start: int, end: int, observations: Iterable[Observation]) -> int:
        rows = [
            {"obs_time": o.obs_time, "report_type": o.report_type, "data": o.to_json()}
            for o in observations
        ]
        with self.engine.begin() as conn:
            conn.execute(
                text("DELETE FROM observations WHERE obs_time >= :start AND obs_time < :end"),
                {"start": start, "end": end},
            )
            if rows:
                conn.execute(
                    text(
                        """
                        INSERT INTO observations (obs_time, report_type, data)
                        VALUES (:obs_time, :report_type, :data)
                        ON CONFLICT (obs_time) DO UPDATE SET
                            report_type = excluded.report_type, data = excluded.data
                        """
                    ),
                    rows,
                )
        return len(rows)

    def latest_observation(self) -> Optional[Observation]:
        found = self.recent_observations(1)
        return found[0] if found else None

    def recent_observations(self, limit: int) -> List[Observation]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT data FROM observations ORDER BY obs_time DESC LIMIT :limit"),
                {"limit": max(0, int(limit))},
            ).all()
        return [Observation.from_json(r[0]) for r in rows]

    def observations_between(self, start: int, end: int) -> List[Observation]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT data FROM observations WHERE obs_time >= :start AND obs_time < :end "
                    "ORDER BY obs_time"
                ),
                {"start": start, "end": end},
            ).all()
        return [Observation.from_json(r[0]) for r in rows]

    # forecasts

    def upsert_forecasts(self, forecasts: Iterable[Forecast]) -> int:
        rows = [
            {
                "id": f.id,
                "model_id": f.model_id,
                "issue_time": f.issue_time,
                "valid_time": f.valid_time,
                "data": f.to_json(),
            }
            for f in forecasts
        ]
        if not rows:
            return 0
        with self.engine.begin() as conn:
            conn.execute(_UPSERT_FORECAST, rows)
        return len(rows)

    def forecasts_between(self, start: int, end: int) -> List[Forecast]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT data FROM forecasts WHERE valid_time >= :start AND valid_time < :end"),
                {"start": start, "end": end},
            ).all()
        return [Forecast.from_json(r[0]) for r in rows]

    def forecast_valid_range(self) -> Optional[Tuple[int, int]]:
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT MIN(valid_time), MAX(valid_time) FROM forecasts")).first()
        if row is None or row[0] is None:
            return None
        return int(row[0]), int(row[1])

    # verifications

    def upsert_verifications(self, records: Iterable[VerificationRecord]) -> int:
        rows = [r.to_dict() for r in records]
        if not rows:
            return 0
        with self.engine.begin() as conn:
            conn.execute(_UPSERT_VERIFICATION, rows)
        return len(rows)

    @staticmethod
    def _row_to_verification(row) -> VerificationRecord:
        return VerificationRecord.from_dict(dict(row))

    def verifications_between(self, start: int, end: int) -> List[VerificationRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"SELECT {', '.join(_VERIFICATION_COLUMNS)} FROM verifications "
                    "WHERE valid_time >= :start AND valid_time < :end"
                ),
                {"start": start, "end": end},
            ).mappings().all()
        return [self._row_to_verification(r) for r in rows]

    def query_verifications(self, *, model_id=None, variable=None, min_lead=None, max_lead=None) -> List[VerificationRecord]:
        clauses = []
        params: Dict[str, object] = {}
        if model_id is not None:
            clauses.append("model_id = :model_id")
            params["model_id"] = model_id
        if variable is not None:
            clauses.append("variable = :variable")
            params["variable"] = variable
        if min_lead is not None:
            clauses.append("lead_time_hours >= :min_lead")
            params["min_lead"] = min_lead
        if max_lead is not None:
            clauses.append("lead_time_hours <= :max_lead")
            params["max_lead"] = max_lead
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {', '.join(_VERIFICATION_COLUMNS)} FROM verifications{where}"),
                params,
            ).mappings().all()
        return [self._row_to_verification(r) for r in rows]

    def verification_days(self) -> Set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT DISTINCT valid_time / :day_ms FROM verifications"),
                {"day_ms": DAY_MS},
            ).all()
        return {day_of(int(r[0]) * DAY_MS) for r in rows}

    # metadata

    def get_metadata(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT value FROM metadata WHERE key = :key"), {"key": key}).first()
        return row[0] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_UPSERT_METADATA, {"key": key, "value": str(value)})

    def delete_metadata(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM metadata WHERE key = :key"), {"key": key})

    def metadata_with_prefix(self, prefix: str) -> Dict[str, str]:
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT key, value FROM metadata")).all()
        return {k: v for k, v in rows if k.startswith(prefix)}

    # daily rollups

    def replace_daily_stats(self, day: str, accumulators: Iterable[DailyStatAccumulator]) -> int:
        rows = []
        for acc in accumulators:
            row = acc.to_dict()
            row["day"] = day
            rows.append(row)
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM daily_stats WHERE day = :day"), {"day": day})
            if rows:
                conn.execute(
                    text(
                        f"INSERT INTO daily_stats ({', '.join(_DAILY_COLUMNS)}) "
                        f"VALUES ({', '.join(':' + c for c in _DAILY_COLUMNS)})"
                    ),
                    rows,
                )
        return len(rows)

    def daily_stats(self, *, bucket=None, variable=None, model_id=None) -> List[DailyStatAccumulator]:
        clauses = []
        params: Dict[str, object] = {}
        for column, value in (("bucket", bucket), ("variable", variable), ("model_id", model_id)):
            if value is not None:
                clauses.append(f"{column} = :{column}")
                params[column] = value
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {', '.join(_DAILY_COLUMNS)} FROM daily_stats{where}"),
                params,
            ).mappings().all()
        return [
            DailyStatAccumulator(
                day=r["day"],
                model_id=r["model_id"],
                variable=r["variable"],
                bucket=r["bucket"],
                sum_abs_error=float(r["sum_abs_error"]),
                sum_sq_error=float(r["sum_sq_error"]),
                sum_bias=float(r["sum_bias"]),
                sum_abs_error_sq=float(r["sum_abs_error_sq"]),
                count=int(r["count"]),
            )
            for r in rows
        ]

    def rollup_days(self) -> Set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(text("SELECT DISTINCT day FROM daily_stats")).all()
        return {r[0] for r in rows}

    # leaderboard cache

    def get_leaderboard_cache(self, bucket: str, variable: str) -> Optional[List[dict]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT data FROM leaderboard_cache WHERE bucket = :bucket AND variable = :variable"),
                {"bucket": bucket, "variable": variable},
            ).first()
        return json.loads(row[0]) if row else None

    def put_leaderboard_cache(self, bucket: str, variable: str, rows: List[dict], updated_at: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _UPSERT_CACHE,
                {"bucket": bucket, "variable": variable, "data": json.dumps(rows), "updated_at": updated_at},
            )

    # retention

    def prune_before(self, cutoff: int) -> int:
        removed = 0
        with self.engine.begin() as conn:
            for stmt in (
                "DELETE FROM observations WHERE obs_time < :cutoff",
                "DELETE FROM forecasts WHERE valid_time < :cutoff",
                "DELETE FROM verifications WHERE valid_time < :cutoff",
            ):
                removed += conn.execute(text(stmt), {"cutoff": cutoff}).rowcount or 0
        return removed

    def clear(self) -> None:
        with self.engine.begin() as conn:
            for table in ("observations", "forecasts", "verifications", "metadata", "daily_stats", "leaderboard_cache"):
                conn.execute(text(f"DELETE FROM {table}"))
