"""Sync job engine.

Job lifecycle:
    pending --claim--> in_progress --success--> completed
                       in_progress --failure--> failed
                       in_progress --stale--> pending (retry_count + 1), or failed at the retry cap

Claiming, stale resets and the final completed/failed write are single
conditional UPDATEs, so a job can't be claimed twice, reset after it finished,
or finished by a worker that lost it to a stale reset. Each job commits its own
state, so a failing job never rolls back another job in the same tick.

Failure policy:
- token refresh, auth and rate-limit errors before the activity loop fail the job
- a single activity failing for any reason only increments failed_activities
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from activity_sync.config.settings import settings
from activity_sync.core.errors import AuthError, SyncError
from activity_sync.db.models import TERMINAL_JOB_STATUSES, SyncJob, SyncJobKind, SyncJobStatus
from activity_sync.db.session import get_session
from activity_sync.ingestion.credentials import ensure_fresh_access_token, get_credential
from activity_sync.ingestion.disciplines import DisciplineLookup
from activity_sync.ingestion.normalize import normalize
from activity_sync.ingestion.save_activities import latest_activity_start, store_activity
from activity_sync.integrations.base import ProviderClient
from activity_sync.integrations.registry import SUPPORTED_PROVIDERS, get_provider_client
from activity_sync.utils.timezone import to_utc, utcnow

ClientFactory = Callable[[str], ProviderClient]

TIMED_OUT_MESSAGE = "Job timed out and was reset"


@dataclass
class JobOutcome:
    job_id: str
    status: str
    total_activities: int = 0
    processed_activities: int = 0
    failed_activities: int = 0
    error_message: str | None = None

    @classmethod
    def from_job(cls, job: SyncJob) -> JobOutcome:
        return cls(
            job_id=job.id,
            status=job.status,
            total_activities=job.total_activities,
            processed_activities=job.processed_activities,
            failed_activities=job.failed_activities,
            error_message=job.error_message,
        )


@dataclass(frozen=True)
class StaleSweepResult:
    reset: int
    failed: int


def _max_activities(metadata: dict[str, Any] | None) -> int | None:
    if not metadata:
        return None
    value = metadata.get("max_activities")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"metadata.max_activities must be a positive integer, got {value!r}")
    return value


def create_sync_job(
    session: Session,
    *,
    athlete_id: str,
    sync_type: str,
    provider: str = "strava",
    after: datetime | None = None,
    before: datetime | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> SyncJob:
    """Queue a sync job in pending state.

    Raises:
        ValueError: Unknown sync_type or provider, after not before `before`,
            or an invalid max_activities
    """
    if sync_type not in {kind.value for kind in SyncJobKind}:
        raise ValueError(f"sync_type must be one of {[kind.value for kind in SyncJobKind]}, got {sync_type!r}")
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")
    if after is not None and before is not None and to_utc(after) >= to_utc(before):
        raise ValueError("after must be earlier than before")
    _max_activities(metadata)

    job = SyncJob(
        athlete_id=athlete_id,
        provider=provider,
        sync_type=sync_type,
        after_timestamp=after,
        before_timestamp=before,
        status=SyncJobStatus.PENDING.value,
        created_at=now or utcnow(),
        job_metadata=metadata,
    )
    session.add(job)
    session.flush()
    logger.info(f"[SYNC_JOB] Created {sync_type} {provider} job {job.id} for athlete {athlete_id}")
    return job


def get_sync_job(session: Session, job_id: str) -> SyncJob | None:
    return session.get(SyncJob, job_id)


def claim_pending_jobs(session: Session, *, limit: int | None = None, now: datetime | None = None) -> list[SyncJob]:
    """Move up to `limit` oldest pending jobs to in_progress.

    Returns:
        The claimed jobs, oldest first. Jobs claimed by a concurrent worker
        between the SELECT and the UPDATE are skipped.
    """
    limit = limit or settings.sync_batch_size
    now = now or utcnow()
    candidate_ids = (
        session.execute(
            select(SyncJob.id).where(SyncJob.status == SyncJobStatus.PENDING.value).order_by(SyncJob.created_at).limit(limit)
        )
        .scalars()
        .all()
    )

    claimed: list[str] = []
    for job_id in candidate_ids:
        result = session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PENDING.value)
            .values(status=SyncJobStatus.IN_PROGRESS.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(job_id)
        else:
            logger.debug(f"[SYNC_JOB] Job {job_id} was claimed elsewhere")
    session.commit()

    if not claimed:
        return []
    jobs = (
        session.execute(
            select(SyncJob).where(SyncJob.id.in_(claimed)).order_by(SyncJob.created_at).execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    logger.info(f"[SYNC_JOB] Claimed {len(jobs)} pending job(s)")
    return list(jobs)


def _finish_job(
    session: Session,
    job: SyncJob,
    claimed_at: datetime | None,
    status: SyncJobStatus,
    error_message: str | None = None,
) -> bool:
    """Write the terminal state if this worker still owns the job.

    Ownership means the row is still in_progress with claimed_at as its
    started_at. A stale sweep reset or a later re-claim changes one of the
    two, and the write then matches no row.

    Returns:
        True when the terminal state was written
    """
    completed_at = utcnow()
    values = {
        "status": status.value,
        "completed_at": completed_at,
        "error_message": error_message,
        "total_activities": job.total_activities,
        "processed_activities": job.processed_activities,
        "failed_activities": job.failed_activities,
    }
    written = session.execute(
        update(SyncJob)
        .where(
            SyncJob.id == job.id,
            SyncJob.status == SyncJobStatus.IN_PROGRESS.value,
            SyncJob.started_at == claimed_at,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    session.commit()

    if written != 1:
        logger.warning(f"[SYNC_JOB] Job {job.id} was reset or reclaimed while running, discarding its {status.value} result")
        session.refresh(job)
        return False
    for key, value in values.items():
        set_committed_value(job, key, value)
    return True


def _fail_job(session: Session, job: SyncJob, claimed_at: datetime | None, message: str) -> JobOutcome:
    session.rollback()
    if _finish_job(session, job, claimed_at, SyncJobStatus.FAILED, message):
        logger.error(f"[SYNC_JOB] Job {job.id} failed: {message}")
    return JobOutcome.from_job(job)


def _fetch_window(session: Session, job: SyncJob) -> tuple[datetime | None, datetime | None]:
    after = job.after_timestamp
    if after is None and job.sync_type == SyncJobKind.INCREMENTAL.value:
        latest = latest_activity_start(session, job.athlete_id, job.provider)
        if latest is not None:
            after = to_utc(latest) - timedelta(hours=settings.incremental_overlap_hours)
            logger.info(f"[SYNC_JOB] Incremental job {job.id} fetching after {after.isoformat()}")
    return after, job.before_timestamp


def _activity_ref(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("id") or raw.get("activityId") or raw.get("summaryId")
    return None


def _count_failed_activity(session: Session, job: SyncJob) -> None:
    job.failed_activities += 1
    session.commit()


def process_sync_job(
    session: Session,
    job: SyncJob,
    *,
    client_factory: ClientFactory = get_provider_client,
    lookup: DisciplineLookup | None = None,
) -> JobOutcome:
    """Drive a claimed job to completed or failed.

    Args:
        session: Database session; committed after every activity
        job: Job in in_progress state
        client_factory: Builds the provider client for job.provider
        lookup: Discipline lookup table for normalization

    Returns:
        Final job outcome
    """
    logger.info(f"[SYNC_JOB] Processing job {job.id} ({job.sync_type}, {job.provider}) for athlete {job.athlete_id}")
    claimed_at = job.started_at
    try:
        credential = get_credential(session, job.athlete_id, job.provider)
        if credential is None or not credential.connected:
            raise AuthError(f"No connected {job.provider} account for athlete {job.athlete_id}", provider=job.provider)
        client = client_factory(job.provider)
        access_token = ensure_fresh_access_token(session, credential, client)
        after, before = _fetch_window(session, job)
        raw_activities = client.fetch_activities(
            access_token,
            after=after,
            before=before,
            max_activities=_max_activities(job.job_metadata),
        )
    except (SyncError, ValueError) as e:
        return _fail_job(session, job, claimed_at, str(e))

    job.total_activities = len(raw_activities)
    session.commit()

    for raw in raw_activities:
        try:
            store_activity(session, normalize(raw, job.athlete_id, job.provider, lookup))
            job.processed_activities += 1
            session.commit()
        except (SyncError, SQLAlchemyError, ValueError) as e:
            session.rollback()
            logger.warning(f"[SYNC_JOB] Job {job.id}: activity {_activity_ref(raw)} failed: {e}")
            _count_failed_activity(session, job)
        except Exception as e:
            session.rollback()
            logger.exception(f"[SYNC_JOB] Job {job.id}: unexpected error on activity {_activity_ref(raw)}: {e}")
            _count_failed_activity(session, job)

    if _finish_job(session, job, claimed_at, SyncJobStatus.COMPLETED):
        logger.info(
            f"[SYNC_JOB] Job {job.id} completed: total={job.total_activities} "
            f"processed={job.processed_activities} failed={job.failed_activities}"
        )
    return JobOutcome.from_job(job)


def run_sync_tick(*, limit: int | None = None, client_factory: ClientFactory = get_provider_client) -> list[JobOutcome]:
    """Claim a batch of pending jobs and process each one independently."""
    outcomes: list[JobOutcome] = []
    with get_session() as session:
        jobs = claim_pending_jobs(session, limit=limit)
        for job in jobs:
            claimed_at = job.started_at
            try:
                outcomes.append(process_sync_job(session, job, client_factory=client_factory))
            except Exception as e:
                logger.exception(f"[SYNC_JOB] Unexpected error processing job {job.id}: {e}")
                try:
                    outcomes.append(_fail_job(session, job, claimed_at, f"Unexpected error: {e}"))
                except SQLAlchemyError as db_error:
                    # Left in_progress; the stale sweep picks it up
                    session.rollback()
                    logger.error(f"[SYNC_JOB] Could not mark job {job.id} failed: {db_error}")
    return outcomes


def reset_stuck_jobs(
    session: Session,
    *,
    now: datetime | None = None,
    stale_after_minutes: int | None = None,
    max_retries: int | None = None,
) -> StaleSweepResult:
    """Recover in_progress jobs whose started_at is older than the staleness threshold.

    Jobs under the retry cap go back to pending with retry_count + 1; the rest fail.
    """
    now = now or utcnow()
    stale_after = settings.sync_stale_after_minutes if stale_after_minutes is None else stale_after_minutes
    cap = settings.sync_max_retries if max_retries is None else max_retries
    cutoff = now - timedelta(minutes=stale_after)
    is_stale = (SyncJob.status == SyncJobStatus.IN_PROGRESS.value, SyncJob.started_at < cutoff)

    reset = session.execute(
        update(SyncJob)
        .where(*is_stale, SyncJob.retry_count < cap)
        .values(
            status=SyncJobStatus.PENDING.value,
            started_at=None,
            retry_count=SyncJob.retry_count + 1,
            error_message=TIMED_OUT_MESSAGE,
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    failed = session.execute(
        update(SyncJob)
        .where(*is_stale, SyncJob.retry_count >= cap)
        .values(
            status=SyncJobStatus.FAILED.value,
            completed_at=now,
            error_message=f"Job exceeded maximum retry count ({cap})",
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    session.commit()
    session.expire_all()

    if reset or failed:
        logger.warning(f"[SYNC_JOB] Stale sweep: reset={reset} failed={failed}")
    return StaleSweepResult(reset=reset, failed=failed)


def cleanup_old_jobs(session: Session, *, now: datetime | None = None, retention_days: int | None = None) -> int:
    """Delete completed/failed jobs whose completed_at is past the retention window.

    Returns:
        Number of deleted jobs
    """
    now = now or utcnow()
    days = settings.sync_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)
    deleted = session.execute(
        delete(SyncJob)
        .where(SyncJob.status.in_(TERMINAL_JOB_STATUSES), SyncJob.completed_at < cutoff)
        .execution_options(synchronize_session=False)
    ).rowcount
    session.commit()
    session.expire_all()
    logger.info(f"[SYNC_JOB] Retention sweep deleted {deleted} job(s) completed before {cutoff.isoformat()}")
    return deleted


def get_sync_job_stats(session: Session) -> dict[str, int]:
    """Job counts per status, including statuses with no jobs."""
    counts = {status.value: 0 for status in SyncJobStatus}
    for status, count in session.execute(select(SyncJob.status, func.count()).group_by(SyncJob.status)).all():
        counts[status] = count
    return counts
