"""Celery tasks driving the sync job engine.

Tasks are thin wrappers: each opens its own session and calls the engine.
A job's failure is recorded on the job row, so tasks don't autoretry on it.
"""

from loguru import logger
from sqlalchemy.exc import OperationalError

from activity_sync.celery_app import celery_app
from activity_sync.config.settings import settings, validate_required_settings
from activity_sync.db.session import get_session
from activity_sync.ingestion.sync_jobs import cleanup_old_jobs, reset_stuck_jobs, run_sync_tick

# Worker processes import this module; refuse to start without required secrets
validate_required_settings(settings)


@celery_app.task(
    autoretry_for=(OperationalError,),
    retry_backoff=60,
    retry_kwargs={"max_retries": 3},
)
def process_sync_jobs_task() -> dict[str, int]:
    """Claim and process one batch of pending sync jobs."""
    outcomes = run_sync_tick()
    completed = sum(1 for outcome in outcomes if outcome.status == "completed")
    logger.info(f"[CELERY] Sync tick finished: claimed={len(outcomes)} completed={completed} failed={len(outcomes) - completed}")
    return {"claimed": len(outcomes), "completed": completed, "failed": len(outcomes) - completed}


@celery_app.task(
    autoretry_for=(OperationalError,),
    retry_backoff=60,
    retry_kwargs={"max_retries": 3},
)
def reset_stuck_jobs_task() -> dict[str, int]:
    """Reset or fail sync jobs stuck in_progress past the staleness threshold."""
    with get_session() as session:
        result = reset_stuck_jobs(session)
    return {"reset": result.reset, "failed": result.failed}


@celery_app.task
def cleanup_old_jobs_task() -> int:
    """Purge terminal sync jobs past the retention window."""
    with get_session() as session:
        return cleanup_old_jobs(session)
