"""Activity persistence: identity upsert, then reconcile, then insert.

store_activity never commits; the caller owns the transaction so the job
engine can commit per activity and the webhook path per event.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import NamedTuple

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_sync.core.errors import PersistenceError
from activity_sync.db.models import Activity
from activity_sync.ingestion.normalize import NormalizedActivity
from activity_sync.ingestion.reconcile import FILL_IF_MISSING_FIELDS, MATCH_WINDOW, MergeInto, merge_into, reconcile
from activity_sync.utils.timezone import utcnow


class StoreAction(StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    MERGED = "merged"


class StoreResult(NamedTuple):
    action: StoreAction
    activity_id: str


def find_by_identity(session: Session, source: str, external_id: str | None) -> Activity | None:
    if not external_id:
        return None
    return session.execute(select(Activity).where(Activity.source == source, Activity.external_id == external_id)).scalar_one_or_none()


def load_reconcile_candidates(session: Session, candidate: NormalizedActivity) -> list[Activity]:
    """Load the athlete's activities from other sources inside the match window."""
    return list(
        session.execute(
            select(Activity)
            .where(
                Activity.athlete_id == candidate.athlete_id,
                Activity.source != candidate.source,
                Activity.start_time >= candidate.start_time - MATCH_WINDOW,
                Activity.start_time <= candidate.start_time + MATCH_WINDOW,
            )
            .order_by(Activity.start_time)
        )
        .scalars()
        .all()
    )


def latest_activity_start(session: Session, athlete_id: str, source: str) -> datetime | None:
    """Start time of the athlete's newest stored activity from a source."""
    return session.execute(
        select(func.max(Activity.start_time)).where(Activity.athlete_id == athlete_id, Activity.source == source)
    ).scalar_one_or_none()


def _update_from_provider(row: Activity, normalized: NormalizedActivity, now: datetime) -> None:
    for field, value in normalized.row_values().items():
        # Keep enrichments merged in from another provider
        if value is None and field in FILL_IF_MISSING_FIELDS:
            continue
        setattr(row, field, value)
    row.updated_at = now


def store_activity(session: Session, normalized: NormalizedActivity, *, now: datetime | None = None) -> StoreResult:
    """Persist a normalized activity idempotently.

    1. A row with the same (source, external_id) is updated in place.
    2. Otherwise a cross-provider duplicate is merged (see reconcile).
    3. Otherwise a new row is inserted.

    Args:
        session: Database session (flushed, not committed)
        normalized: Activity to store
        now: Timestamp for created_at/updated_at

    Returns:
        StoreResult with the action taken and the affected row id

    Raises:
        PersistenceError: If the datastore rejects the write
    """
    now = now or utcnow()
    try:
        existing = find_by_identity(session, normalized.source, normalized.external_id)
        if existing is not None:
            _update_from_provider(existing, normalized, now)
            session.flush()
            logger.debug(f"[SAVE_ACTIVITY] Updated {existing.id} from {normalized.source}")
            return StoreResult(StoreAction.UPDATED, existing.id)

        action = reconcile(normalized, load_reconcile_candidates(session, normalized))
        if isinstance(action, MergeInto):
            target = session.get(Activity, action.existing_id)
            if target is None:
                raise PersistenceError(f"Merge target {action.existing_id} disappeared")
            merge_into(target, normalized, now)
            session.flush()
            return StoreResult(StoreAction.MERGED, target.id)

        row = Activity(
            id=normalized.id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            **normalized.row_values(),
        )
        session.add(row)
        session.flush()
        logger.debug(f"[SAVE_ACTIVITY] Inserted {row.id}")
        return StoreResult(StoreAction.INSERTED, row.id)
    except SQLAlchemyError as e:
        raise PersistenceError(
            f"Failed to store {normalized.source} activity {normalized.external_id}: {e}",
            provider=normalized.source,
        ) from e
