"""Periodic triggers for the sync job engine.

The scheduler only enqueues Celery tasks; workers do the work.

Cadence:
- sync tick every 5 minutes
- stale-job sweep every 10 minutes
- retention sweep daily at 02:00 UTC
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from celery.app.task import Task
from loguru import logger

from activity_sync.ingestion.tasks import cleanup_old_jobs_task as _cleanup_old_jobs_task
from activity_sync.ingestion.tasks import process_sync_jobs_task as _process_sync_jobs_task
from activity_sync.ingestion.tasks import reset_stuck_jobs_task as _reset_stuck_jobs_task

# Properly typed references to Celery tasks
process_sync_jobs_task: Task = _process_sync_jobs_task
reset_stuck_jobs_task: Task = _reset_stuck_jobs_task
cleanup_old_jobs_task: Task = _cleanup_old_jobs_task


def sync_tick() -> None:
    result = process_sync_jobs_task.delay()
    logger.info(f"[SCHEDULER] Enqueued sync tick: task_id={result.id}")


def stale_sweep_tick() -> None:
    result = reset_stuck_jobs_task.delay()
    logger.info(f"[SCHEDULER] Enqueued stale-job sweep: task_id={result.id}")


def retention_tick() -> None:
    result = cleanup_old_jobs_task.delay()
    logger.info(f"[SCHEDULER] Enqueued retention sweep: task_id={result.id}")


def build_scheduler() -> BackgroundScheduler:
    """Create the background scheduler with the sync engine's jobs registered (not started)."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        sync_tick,
        trigger=IntervalTrigger(minutes=5),
        id="sync_job_tick",
        name="Sync job processor",
        replace_existing=True,
    )
    scheduler.add_job(
        stale_sweep_tick,
        trigger=IntervalTrigger(minutes=10),
        id="sync_job_stale_sweep",
        name="Stuck sync job recovery",
        replace_existing=True,
    )
    scheduler.add_job(
        retention_tick,
        trigger=CronTrigger(hour=2, minute=0, timezone="UTC"),
        id="sync_job_retention",
        name="Old sync job cleanup",
        replace_existing=True,
    )
    return scheduler
