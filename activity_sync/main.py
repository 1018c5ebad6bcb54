import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from activity_sync.api.auth import router as auth_router
from activity_sync.api.sync_jobs import router as sync_jobs_router
from activity_sync.config.settings import settings, validate_required_settings
from activity_sync.core.logger import setup_logger
from activity_sync.db.session import init_db
from activity_sync.ingestion.scheduler import build_scheduler
from activity_sync.webhooks.garmin import router as garmin_webhook_router
from activity_sync.webhooks.strava import router as strava_webhook_router


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Validate configuration, prepare the database and start the scheduler.

    Startup aborts with ConfigurationError when required settings are missing.
    """
    setup_logger(level=settings.log_level, log_file=settings.log_file)
    validate_required_settings(settings)

    logger.info("Ensuring database tables exist")
    init_db()

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler()
        scheduler.start()
        logger.info("[SCHEDULER] Started sync scheduler (tick 5 min, stale sweep 10 min, retention daily 02:00 UTC)")
    else:
        logger.info("[SCHEDULER] Scheduler disabled by configuration")

    await asyncio.sleep(0)
    yield

    if scheduler is not None:
        scheduler.shutdown()
        logger.info("[SCHEDULER] Stopped sync scheduler")


app = FastAPI(title="Activity Sync", lifespan=lifespan)

app.include_router(sync_jobs_router)
app.include_router(auth_router)
app.include_router(strava_webhook_router)
app.include_router(garmin_webhook_router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.debug(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
    return response
