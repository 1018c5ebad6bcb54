"""Sync job endpoints: queue a job and read its status.

Status responses expose counters and error_message only; provider error text
is passed through verbatim, stack traces never are.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, status
from loguru import logger
from pydantic import BaseModel, Field

from activity_sync.db.models import Athlete
from activity_sync.db.session import get_session
from activity_sync.ingestion.sync_jobs import create_sync_job, get_sync_job, get_sync_job_stats

router = APIRouter(prefix="/sync/jobs", tags=["sync"])


class SyncJobCreateRequest(BaseModel):
    athlete_id: str
    sync_type: str
    provider: str = "strava"
    after: datetime | None = None
    before: datetime | None = None
    metadata: dict[str, Any] | None = Field(default=None)


class SyncJobCreateResponse(BaseModel):
    job_id: str
    status: str


class SyncJobStatusResponse(BaseModel):
    job_id: str
    athlete_id: str
    provider: str
    sync_type: str
    status: str
    total_activities: int
    processed_activities: int
    failed_activities: int
    retry_count: int
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SyncJobCreateResponse)
def create_job(request: SyncJobCreateRequest) -> SyncJobCreateResponse:
    """Queue a sync job for the scheduler to pick up."""
    with get_session() as session:
        if session.get(Athlete, request.athlete_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Athlete {request.athlete_id} not found")
        try:
            job = create_sync_job(
                session,
                athlete_id=request.athlete_id,
                sync_type=request.sync_type,
                provider=request.provider,
                after=request.after,
                before=request.before,
                metadata=request.metadata,
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        session.commit()
        logger.info(f"[SYNC_API] Queued job {job.id} for athlete {request.athlete_id}")
        return SyncJobCreateResponse(job_id=job.id, status=job.status)


@router.get("/stats")
def job_stats() -> dict[str, int]:
    """Job counts per status."""
    with get_session() as session:
        return get_sync_job_stats(session)


@router.get("/{job_id}", response_model=SyncJobStatusResponse)
def job_status(job_id: str) -> SyncJobStatusResponse:
    with get_session() as session:
        job = get_sync_job(session, job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
        return SyncJobStatusResponse(
            job_id=job.id,
            athlete_id=job.athlete_id,
            provider=job.provider,
            sync_type=job.sync_type,
            status=job.status,
            total_activities=job.total_activities,
            processed_activities=job.processed_activities,
            failed_activities=job.failed_activities,
            retry_count=job.retry_count,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
