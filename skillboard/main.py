"""FastAPI application setup for the skillboard service."""

import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

from skillboard.aggregation import default_buckets
from skillboard.api import router as api_router
from skillboard.config import settings
from skillboard.rollup import backfill_missing_days
from skillboard.store_manager import get_store
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="main")


def _startup_backfill() -> None:
    try:
        backfill_missing_days(get_store(), default_buckets(settings.bucket_inclusivity),
                              settings.backfill_pause_seconds)
    except Exception:
        logger.exception("Startup backfill failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store (running migrations) and schedule the one-time rollup backfill."""
    get_store()
    if settings.backfill_on_startup:
        threading.Thread(target=_startup_backfill, name="skillboard-startup-backfill", daemon=True).start()
    yield


app = FastAPI(title="NWP Skillboard", lifespan=lifespan)

# API routes
app.include_router(api_router, prefix="/api")
