from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""


class ActivitySource(StrEnum):
    STRAVA = "strava"
    GARMIN = "garmin"
    MANUAL = "manual"


class SyncJobStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncJobKind(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


TERMINAL_JOB_STATUSES = (SyncJobStatus.COMPLETED.value, SyncJobStatus.FAILED.value)


class Athlete(Base):
    """Athlete profile.

    Profile fields are refreshed from the provider on webhook deliveries.
    fcm_token is the device token used for activity push notifications.
    """

    __tablename__ = "athletes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)
    sex: Mapped[str | None] = mapped_column(String, nullable=True)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    profile_picture_url: Mapped[str | None] = mapped_column(String, nullable=True)
    fcm_token: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class OAuthCredential(Base):
    """OAuth token material per athlete and provider.

    Fields:
    - provider_user_id: The athlete's id at the provider (Strava athlete id, Garmin user id)
    - access_token / refresh_token: Fernet-encrypted, cleared on disconnect
    - expires_at: Access token expiry
    - connected: False once the athlete or provider revoked access
    """

    __tablename__ = "oauth_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    athlete_id: Mapped[str] = mapped_column(String, ForeignKey("athletes.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # Encrypted
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)  # Encrypted
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)
    connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("athlete_id", "provider", name="uq_oauth_credentials_athlete_provider"),
        UniqueConstraint("provider", "provider_user_id", name="uq_oauth_credentials_provider_user"),
    )


class Activity(Base):
    """Canonical workout record.

    One row per real-world workout. A second provider's report of the same
    workout is merged into the existing row (see ingestion.reconcile);
    merged_sources keeps that provider's external id and raw payload.
    Distances are meters, speeds m/s, durations seconds.
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    athlete_id: Mapped[str] = mapped_column(String, ForeignKey("athletes.id", ondelete="CASCADE"), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default=ActivitySource.STRAVA.value)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    discipline: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_time_local: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    elapsed_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    moving_time: Mapped[int | None] = mapped_column(Integer, nullable=True)

    distance: Mapped[float | None] = mapped_column(Float, nullable=True)
    elevation_gain: Mapped[float | None] = mapped_column(Float, nullable=True)
    elev_high: Mapped[float | None] = mapped_column(Float, nullable=True)
    elev_low: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_heartrate: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_cadence: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_watts: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_watts: Mapped[float | None] = mapped_column(Float, nullable=True)
    kilojoules: Mapped[float | None] = mapped_column(Float, nullable=True)
    calories: Mapped[float | None] = mapped_column(Float, nullable=True)
    suffer_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    device_name: Mapped[str | None] = mapped_column(String, nullable=True)
    summary_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_latlng: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    end_latlng: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    upload_id: Mapped[str | None] = mapped_column(String, nullable=True)
    workout_type: Mapped[int | None] = mapped_column(Integer, nullable=True)

    trainer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    commute: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_watts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    merged_sources: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_activities_source_external_id"),
        Index("idx_activities_athlete_start_time", "athlete_id", "start_time"),
    )


class SyncJob(Base):
    """Durable unit of background sync work.

    Status moves pending -> in_progress -> completed | failed. A stale
    in_progress job is put back to pending (retry_count + 1) until the retry
    cap, then failed. job_metadata is stored in the "metadata" column and may
    carry max_activities for capped syncs.
    """

    __tablename__ = "sync_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    athlete_id: Mapped[str] = mapped_column(String, ForeignKey("athletes.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False, default=ActivitySource.STRAVA.value)
    sync_type: Mapped[str] = mapped_column(String, nullable=False)
    after_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    before_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=SyncJobStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_activities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_activities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_activities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    job_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (Index("idx_sync_jobs_status_created_at", "status", "created_at"),)


class OAuthState(Base):
    """Pending OAuth handshake.

    Created when an athlete starts connecting a provider and deleted by the
    callback that completes it. The state value is the CSRF token echoed back
    by the provider; code_verifier holds the PKCE verifier (Garmin).
    """

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String, primary_key=True)
    athlete_id: Mapped[str] = mapped_column(String, ForeignKey("athletes.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    code_verifier: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
