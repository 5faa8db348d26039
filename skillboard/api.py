"""HTTP API for the verification leaderboard."""

import hmac
import threading
from typing import List, Optional, Union

import redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from skillboard.aggregation import bucket_by_name, default_buckets
from skillboard.config import settings
from skillboard.domain import (
    OVERALL_SCORE,
    InsufficientData,
    LeaderboardRow,
    MessageResponse,
    ModelVariableStats,
    StatsSource,
    StatusResponse,
    TafResponse,
    is_known_variable,
)
from skillboard.models import now_ms
from skillboard.rollup import backfill_missing_days, bucket_stats, leaderboard
from skillboard.scoring import ranked_model_ids
from skillboard.store_manager import get_store
from skillboard.update_cycle import LAST_FETCH_KEY, get_update_cycle, unavailable_models
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="api")

_redis_client = None
if settings.api_key_redis_url:
    _redis_client = redis.Redis.from_url(settings.api_key_redis_url)
    logger.info("API key checks will use Redis backend", extra={"redis_set": settings.api_key_redis_set})


def require_api_key(x_api_key: str | None = Header(default=None)):
    """
    Validate X-API-Key header against Redis (if configured) or the static api_key setting.
    """
    if not settings.api_key and not _redis_client:
        logger.debug("No API key configured; allowing request")
        return

    if not x_api_key:
        logger.debug("No API key provided")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    if _redis_client:
        logger.debug("Checking API key against Redis")
        try:
            if _redis_client.sismember(settings.api_key_redis_set, x_api_key):
                return
        except redis.RedisError as e:
            logger.warning("Redis API key lookup error; falling back to static key", extra={"error": str(e)})

    if settings.api_key and hmac.compare_digest(str(x_api_key), str(settings.api_key)):
        return

    logger.debug("Invalid API key provided")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


router = APIRouter()


def _buckets():
    return default_buckets(settings.bucket_inclusivity)


def _resolve_bucket(name: str):
    bucket = bucket_by_name(name, _buckets())
    if bucket is None:
        valid = ", ".join(b.name for b in _buckets())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Unknown bucket '{name}'. Expected one of: {valid}")
    return bucket


@router.get("/current-conditions")
def current_conditions():
    """Most recent reconciled observation."""
    obs = get_store().latest_observation()
    if obs is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No observations yet")
    return obs.to_dict()


@router.get("/history")
def history(limit: int = Query(default=24, ge=1, le=500)):
    """The `limit` most recent observations, newest first."""
    return [o.to_dict() for o in get_store().recent_observations(limit)]


@router.get("/leaderboard", response_model=Union[List[LeaderboardRow], InsufficientData])
def get_leaderboard(
    bucket: str = "24h",
    variable: str = OVERALL_SCORE,
    source: StatsSource = StatsSource.ROLLUP,
):
    """Ranked models for (bucket, variable), or an insufficient-data marker when nobody qualifies."""
    lead_bucket = _resolve_bucket(bucket)
    if not is_known_variable(variable):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown variable '{variable}'")
    rows = leaderboard(get_store(), lead_bucket, variable, source=source,
                       policy=settings.missing_variable_policy)
    if not rows:
        logger.debug("Insufficient data for leaderboard", extra={"bucket": bucket, "variable": variable})
        return InsufficientData(bucket=bucket, variable=variable)
    return rows


@router.get("/model/{model_id}", response_model=List[ModelVariableStats])
def model_details(model_id: str, bucket: str = "24h", source: StatsSource = StatsSource.ROLLUP):
    """Per-variable statistics for one model in one bucket."""
    if model_id not in ranked_model_ids():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model '{model_id}'")
    return bucket_stats(get_store(), _resolve_bucket(bucket), model_id=model_id, source=source)


@router.get("/taf", response_model=TafResponse)
def taf():
    """Current terminal aerodrome forecast text for the station."""
    return TafResponse(taf=get_update_cycle().data_source.fetch_taf())


@router.post("/trigger-update", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(require_api_key)])
def trigger_update():
    """Start an out-of-cycle update; a no-op while one is already running."""
    started = get_update_cycle().trigger_async()
    message = "Update started" if started else "Update already running"
    logger.info(message)
    return MessageResponse(message=message, started=started)


def _run_backfill() -> None:
    try:
        backfill_missing_days(get_store(), _buckets(), settings.backfill_pause_seconds, force=True)
    except Exception:
        logger.exception("Daily stats backfill failed")


@router.post("/admin/backfill", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(require_api_key)])
def admin_backfill():
    """Roll up any days missing from the daily stats table, in the background."""
    threading.Thread(target=_run_backfill, name="skillboard-backfill", daemon=True).start()
    return MessageResponse(message="Backfill started")


@router.get("/status", response_model=StatusResponse)
def get_status():
    """Heartbeat with the update cycle state and the last successful fetch."""
    store = get_store()
    cycle = get_update_cycle()
    last_fetch: Optional[str] = store.get_metadata(LAST_FETCH_KEY)
    return StatusResponse(
        cycle_state=cycle.state.status,
        last_fetch=int(last_fetch) if last_fetch else None,
        last_error=cycle.state.last_error,
        server_time=now_ms(),
        unavailable_models=unavailable_models(store),
    )
