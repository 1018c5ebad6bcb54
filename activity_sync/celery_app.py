from celery import Celery
from celery.signals import setup_logging

from activity_sync.config.settings import settings
from activity_sync.core.logger import setup_logger

celery_app = Celery(
    "activity_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["activity_sync.ingestion.tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
)


@setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Route Celery worker logging through loguru instead of Celery's own handlers."""
    setup_logger(level=settings.log_level, log_file=settings.log_file)
