"""Cross-provider duplicate reconciliation.

A phone app and a GPS watch often both report the same workout. A candidate
activity matches an existing one when:

- the existing activity came from a different source
- start times are within MATCH_WINDOW (inclusive)
- distances differ by at most DISTANCE_TOLERANCE_METERS
- elapsed durations differ by at most DURATION_TOLERANCE_SECONDS

A value missing on either side does not disqualify that dimension. Among
several matches the one closest in start time wins; ties keep input order.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from loguru import logger

from activity_sync.db.models import Activity, ActivitySource
from activity_sync.ingestion.normalize import NormalizedActivity
from activity_sync.utils.timezone import to_utc

MATCH_WINDOW = timedelta(minutes=2)
DISTANCE_TOLERANCE_METERS = 100.0
DURATION_TOLERANCE_SECONDS = 60

# Wearables measure these directly; their values replace a phone-only record's
WEARABLE_SOURCES = frozenset({ActivitySource.GARMIN.value})
WEARABLE_AUTHORITATIVE_FIELDS = ("average_heartrate", "max_heartrate", "average_cadence", "device_name")

# Filled on merge only when the existing row has no value
FILL_IF_MISSING_FIELDS = (
    "average_heartrate",
    "max_heartrate",
    "average_cadence",
    "device_name",
    "average_watts",
    "max_watts",
    "kilojoules",
    "calories",
    "elevation_gain",
    "elev_high",
    "elev_low",
    "average_speed",
    "max_speed",
    "summary_polyline",
    "start_latlng",
    "end_latlng",
    "start_time_local",
    "timezone",
    "moving_time",
)


class ActivityLike(Protocol):
    source: str
    start_time: datetime
    distance: float | None
    elapsed_time: int | None


@dataclass(frozen=True)
class Insert:
    """No duplicate found; store the candidate as a new row."""


@dataclass(frozen=True)
class MergeInto:
    """Candidate duplicates an existing row; merge into it."""

    existing_id: str
    time_delta_seconds: float


ReconcileAction = Insert | MergeInto


def _within(a: float | None, b: float | None, tolerance: float) -> bool:
    if a is None or b is None:
        return True
    return abs(a - b) <= tolerance


def time_delta_seconds(candidate: ActivityLike, existing: ActivityLike) -> float:
    return abs((to_utc(candidate.start_time) - to_utc(existing.start_time)).total_seconds())


def is_duplicate(candidate: ActivityLike, existing: ActivityLike) -> bool:
    """Whether existing is the same real-world workout as candidate."""
    if existing.source == candidate.source:
        return False
    if time_delta_seconds(candidate, existing) > MATCH_WINDOW.total_seconds():
        return False
    return _within(candidate.distance, existing.distance, DISTANCE_TOLERANCE_METERS) and _within(
        candidate.elapsed_time, existing.elapsed_time, DURATION_TOLERANCE_SECONDS
    )


def reconcile(candidate: ActivityLike, existing_for_athlete: Sequence[Any]) -> ReconcileAction:
    """Decide whether candidate is new or a duplicate of a stored activity.

    Args:
        candidate: Newly normalized activity
        existing_for_athlete: Stored activities of the same athlete (each needs an id)

    Returns:
        MergeInto(existing_id) for the closest matching activity, else Insert()
    """
    best = None
    best_delta = 0.0
    for existing in existing_for_athlete:
        if not is_duplicate(candidate, existing):
            continue
        delta = time_delta_seconds(candidate, existing)
        if best is None or delta < best_delta:
            best = existing
            best_delta = delta

    if best is None:
        return Insert()
    logger.info(
        f"[RECONCILE] {candidate.source} activity matches existing {best.source} activity {best.id} (start delta {best_delta:.0f}s)"
    )
    return MergeInto(existing_id=best.id, time_delta_seconds=best_delta)


def merge_into(existing: Activity, candidate: NormalizedActivity, now: datetime) -> list[str]:
    """Merge supplementary fields from candidate into an existing row.

    Identity, distance, elapsed duration, discipline and name of the existing
    row are never overwritten. The candidate's provider id and raw payload are
    kept under merged_sources.

    Args:
        existing: Stored activity row (modified in place)
        candidate: Duplicate report from another provider
        now: Timestamp written to updated_at

    Returns:
        Names of the fields that changed
    """
    changed: list[str] = []
    authoritative = candidate.source in WEARABLE_SOURCES and existing.source not in WEARABLE_SOURCES

    for field in FILL_IF_MISSING_FIELDS:
        incoming = getattr(candidate, field)
        if incoming is None:
            continue
        current = getattr(existing, field)
        if current is None or (authoritative and field in WEARABLE_AUTHORITATIVE_FIELDS and current != incoming):
            setattr(existing, field, incoming)
            changed.append(field)

    if candidate.device_watts and not existing.device_watts:
        existing.device_watts = True
        changed.append("device_watts")

    merged_sources = dict(existing.merged_sources or {})
    merged_sources[candidate.source] = {
        "external_id": candidate.external_id,
        "raw_data": candidate.raw_data,
    }
    existing.merged_sources = merged_sources
    existing.updated_at = now

    logger.info(f"[RECONCILE] Merged {candidate.source} activity {candidate.external_id} into {existing.id}: {changed or 'no new fields'}")
    return changed
