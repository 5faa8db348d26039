"""Forward-only schema migrations for the SQL store.

Each migration is a numbered list of DDL statements. Migrations are additive:
a released migration is never edited, new behaviour gets a new number. Every
migration runs in its own transaction together with its `schema_migrations`
bookkeeping row, so a failure leaves the schema at the previous version.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="storage/migrations")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: Sequence[str]


MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        name="base_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS observations (
                obs_time BIGINT PRIMARY KEY,
                report_type TEXT,
                data TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS forecasts (
                id TEXT PRIMARY KEY,
                model_id TEXT NOT NULL,
                issue_time BIGINT NOT NULL,
                valid_time BIGINT NOT NULL,
                data TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_forecasts_valid_time ON forecasts (valid_time)",
            "CREATE INDEX IF NOT EXISTS idx_forecasts_model_id ON forecasts (model_id)",
            """
            CREATE TABLE IF NOT EXISTS verifications (
                key TEXT PRIMARY KEY,
                model_id TEXT NOT NULL,
                variable TEXT NOT NULL,
                valid_time BIGINT NOT NULL,
                issue_time BIGINT NOT NULL,
                lead_time_hours DOUBLE PRECISION NOT NULL,
                forecast_value DOUBLE PRECISION,
                observed_value DOUBLE PRECISION,
                error DOUBLE PRECISION,
                absolute_error DOUBLE PRECISION,
                squared_error DOUBLE PRECISION,
                bias DOUBLE PRECISION
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_verifications_model_var ON verifications (model_id, variable)",
            "CREATE INDEX IF NOT EXISTS idx_verifications_valid_time ON verifications (valid_time)",
            """
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS leaderboard_cache (
                bucket TEXT NOT NULL,
                variable TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at BIGINT NOT NULL,
                PRIMARY KEY (bucket, variable)
            )
            """,
        ),
    ),
    Migration(
        version=2,
        name="daily_stats",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS daily_stats (
                day TEXT NOT NULL,
                model_id TEXT NOT NULL,
                variable TEXT NOT NULL,
                bucket TEXT NOT NULL,
                sum_abs_error DOUBLE PRECISION NOT NULL,
                sum_sq_error DOUBLE PRECISION NOT NULL,
                sum_bias DOUBLE PRECISION NOT NULL,
                count BIGINT NOT NULL,
                PRIMARY KEY (day, model_id, variable, bucket)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_daily_stats_bucket_var ON daily_stats (bucket, variable)",
        ),
    ),
    Migration(
        version=3,
        name="percentage_error_and_spread",
        statements=(
            "ALTER TABLE verifications ADD COLUMN percentage_error DOUBLE PRECISION",
            "ALTER TABLE daily_stats ADD COLUMN sum_abs_error_sq DOUBLE PRECISION NOT NULL DEFAULT 0",
            "CREATE INDEX IF NOT EXISTS idx_verifications_lead_var ON verifications (lead_time_hours, variable)",
        ),
    ),
]


def _ensure_bookkeeping(engine: Engine) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at BIGINT NOT NULL
                )
                """
            )
        )


def applied_versions(engine: Engine) -> List[int]:
    """Return the migration versions already recorded, ascending."""
    _ensure_bookkeeping(engine)
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT version FROM schema_migrations ORDER BY version")).all()
    return [int(r[0]) for r in rows]


def apply_migrations(engine: Engine, migrations: Sequence[Migration] = MIGRATIONS) -> List[int]:
    """Apply every pending migration in order; return the versions applied now."""
    done = set(applied_versions(engine))
    applied: List[int] = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        logger.info("Applying migration", extra={"version": migration.version, "migration": migration.name})
        with engine.begin() as conn:
            for stmt in migration.statements:
                conn.execute(text(stmt))
            conn.execute(
                text("INSERT INTO schema_migrations (version, name, applied_at) VALUES (:v, :n, :t)"),
                {"v": migration.version, "n": migration.name, "t": int(time.time() * 1000)},
            )
        applied.append(migration.version)
    if applied:
        logger.info("Schema up to date", extra={"applied": applied})
    return applied
