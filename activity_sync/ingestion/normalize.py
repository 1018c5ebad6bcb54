"""Provider payload normalization.

Maps Strava and Garmin activity payloads onto NormalizedActivity, the
canonical shape persisted as an Activity row.

Rules:
- Distances stay in meters and speeds in m/s
- Missing numeric readings become None, never 0
- Missing boolean flags become False
- The raw payload is carried unmodified in raw_data
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from activity_sync.config.settings import settings
from activity_sync.core.errors import NormalizationError
from activity_sync.db.models import ActivitySource
from activity_sync.ingestion.disciplines import DisciplineLookup, resolve_discipline
from activity_sync.utils.timezone import from_epoch, parse_iso_datetime

# Sources whose activity ids are unique across all accounts, so the row id can
# be derived from them
GLOBALLY_UNIQUE_ID_SOURCES = frozenset({ActivitySource.STRAVA.value, ActivitySource.GARMIN.value})


class NormalizedActivity(BaseModel):
    """Canonical activity produced by the normalizer."""

    id: str | None = None
    athlete_id: str
    source: str
    external_id: str | None = None
    discipline: int
    name: str | None = None
    description: str | None = None

    start_time: datetime
    start_time_local: datetime | None = None
    timezone: str | None = None
    elapsed_time: int | None = None
    moving_time: int | None = None

    distance: float | None = None
    elevation_gain: float | None = None
    elev_high: float | None = None
    elev_low: float | None = None
    average_speed: float | None = None
    max_speed: float | None = None
    average_heartrate: float | None = None
    max_heartrate: float | None = None
    average_cadence: float | None = None
    average_watts: float | None = None
    max_watts: float | None = None
    kilojoules: float | None = None
    calories: float | None = None
    suffer_score: int | None = None

    device_name: str | None = None
    summary_polyline: str | None = None
    start_latlng: list[float] | None = None
    end_latlng: list[float] | None = None
    upload_id: str | None = None
    workout_type: int | None = None

    trainer: bool = False
    commute: bool = False
    manual: bool = False
    private: bool = False
    flagged: bool = False
    device_watts: bool = False

    raw_data: dict[str, Any] = Field(default_factory=dict)

    def row_values(self) -> dict[str, Any]:
        """Column values for an Activity row, without the id."""
        return self.model_dump(exclude={"id"})


def activity_row_id(source: str, external_id: str | None) -> str | None:
    """Derive a row id from the provider id when that id is globally unique.

    Returns None when the store must generate an id instead.
    """
    if external_id and source in GLOBALLY_UNIQUE_ID_SOURCES:
        return f"{source}-{external_id}"
    return None


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # NaN and infinity are unusable readings
    return number if math.isfinite(number) else None


def _int(value: Any) -> int | None:
    number = _float(value)
    return None if number is None else int(number)


def _str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _latlng(value: Any) -> list[float] | None:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    lat, lng = _float(value[0]), _float(value[1])
    if lat is None or lng is None:
        return None
    return [lat, lng]


def normalize_strava_activity(
    raw: dict[str, Any],
    athlete_id: str,
    lookup: DisciplineLookup | None = None,
) -> NormalizedActivity:
    """Normalize a Strava activity (summary or detailed representation).

    Raises:
        NormalizationError: Payload has no id or no start_date
    """
    if raw.get("id") is None:
        raise NormalizationError("Strava activity has no id", provider="strava")
    external_id = str(raw["id"])
    start_time = parse_iso_datetime(raw.get("start_date"))
    if start_time is None:
        raise NormalizationError(f"Strava activity {external_id} has no start_date", provider="strava")

    # Strava suffixes start_date_local with Z although it is wall-clock time
    start_local = parse_iso_datetime(raw.get("start_date_local"))
    map_data = raw.get("map") if isinstance(raw.get("map"), dict) else {}

    return NormalizedActivity(
        id=activity_row_id(ActivitySource.STRAVA.value, external_id),
        athlete_id=athlete_id,
        source=ActivitySource.STRAVA.value,
        external_id=external_id,
        discipline=resolve_discipline(raw.get("sport_type"), raw.get("type"), lookup, settings.default_discipline),
        name=_str(raw.get("name")),
        description=_str(raw.get("description")),
        start_time=start_time,
        start_time_local=start_local.replace(tzinfo=None) if start_local else None,
        timezone=_str(raw.get("timezone")),
        elapsed_time=_int(raw.get("elapsed_time")),
        moving_time=_int(raw.get("moving_time")),
        distance=_float(raw.get("distance")),
        elevation_gain=_float(raw.get("total_elevation_gain")),
        elev_high=_float(raw.get("elev_high")),
        elev_low=_float(raw.get("elev_low")),
        average_speed=_float(raw.get("average_speed")),
        max_speed=_float(raw.get("max_speed")),
        average_heartrate=_float(raw.get("average_heartrate")),
        max_heartrate=_float(raw.get("max_heartrate")),
        average_cadence=_float(raw.get("average_cadence")),
        average_watts=_float(raw.get("average_watts")),
        max_watts=_float(raw.get("max_watts")),
        kilojoules=_float(raw.get("kilojoules")),
        calories=_float(raw.get("calories")),
        suffer_score=_int(raw.get("suffer_score")),
        device_name=_str(raw.get("device_name")),
        summary_polyline=_str(map_data.get("summary_polyline")),
        start_latlng=_latlng(raw.get("start_latlng")),
        end_latlng=_latlng(raw.get("end_latlng")),
        upload_id=_str(raw.get("upload_id_str") or raw.get("upload_id")),
        workout_type=_int(raw.get("workout_type")),
        trainer=bool(raw.get("trainer", False)),
        commute=bool(raw.get("commute", False)),
        manual=bool(raw.get("manual", False)),
        private=bool(raw.get("private", False)),
        flagged=bool(raw.get("flagged", False)),
        device_watts=bool(raw.get("device_watts", False)),
        raw_data=raw,
    )


def normalize_garmin_activity(
    raw: dict[str, Any],
    athlete_id: str,
    lookup: DisciplineLookup | None = None,
) -> NormalizedActivity:
    """Normalize a Garmin activity summary (push or ping callback payload).

    Raises:
        NormalizationError: Payload has no activityId/summaryId or no startTimeInSeconds
    """
    raw_id = raw.get("activityId") or raw.get("summaryId")
    if raw_id is None:
        raise NormalizationError("Garmin activity has no activityId or summaryId", provider="garmin")
    external_id = str(raw_id)
    start_time = from_epoch(_float(raw.get("startTimeInSeconds")))
    if start_time is None:
        raise NormalizationError(f"Garmin activity {external_id} has no startTimeInSeconds", provider="garmin")

    offset = _int(raw.get("startTimeOffsetInSeconds"))
    start_local = (start_time + timedelta(seconds=offset)).replace(tzinfo=None) if offset is not None else None
    cadence = raw.get("averageRunCadenceInStepsPerMinute")
    if cadence is None:
        cadence = raw.get("averageBikeCadenceInRoundsPerMinute")

    return NormalizedActivity(
        id=activity_row_id(ActivitySource.GARMIN.value, external_id),
        athlete_id=athlete_id,
        source=ActivitySource.GARMIN.value,
        external_id=external_id,
        discipline=resolve_discipline(raw.get("activityType"), None, lookup, settings.default_discipline),
        name=_str(raw.get("activityName")) or "Garmin Activity",
        start_time=start_time,
        start_time_local=start_local,
        elapsed_time=_int(raw.get("durationInSeconds")),
        moving_time=_int(raw.get("movingDurationInSeconds")),
        distance=_float(raw.get("distanceInMeters")),
        elevation_gain=_float(raw.get("totalElevationGainInMeters")),
        average_speed=_float(raw.get("averageSpeedInMetersPerSecond")),
        max_speed=_float(raw.get("maxSpeedInMetersPerSecond")),
        average_heartrate=_float(raw.get("averageHeartRateInBeatsPerMinute")),
        max_heartrate=_float(raw.get("maxHeartRateInBeatsPerMinute")),
        average_cadence=_float(cadence),
        average_watts=_float(raw.get("averagePowerInWatts")),
        max_watts=_float(raw.get("maxPowerInWatts")),
        calories=_float(raw.get("activeKilocalories")),
        device_name=_str(raw.get("deviceName")),
        manual=bool(raw.get("manual", False)),
        raw_data=raw,
    )


_NORMALIZERS = {
    ActivitySource.STRAVA.value: normalize_strava_activity,
    ActivitySource.GARMIN.value: normalize_garmin_activity,
}


def normalize(
    raw: dict[str, Any],
    athlete_id: str,
    provider: str,
    lookup: DisciplineLookup | None = None,
) -> NormalizedActivity:
    """Normalize a raw provider payload.

    Args:
        raw: Provider activity payload
        athlete_id: Internal athlete id
        provider: Payload source ("strava" or "garmin")
        lookup: Discipline lookup table (defaults to the built-in tables)

    Raises:
        NormalizationError: Unknown provider or payload missing id/start time
    """
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        raise NormalizationError(f"No normalizer for provider {provider!r}", provider=provider)
    if not isinstance(raw, dict):
        raise NormalizationError(f"{provider} activity payload is not an object: {type(raw).__name__}", provider=provider)
    activity = normalizer(raw, athlete_id, lookup)
    logger.debug(
        f"[NORMALIZE] {provider} activity {activity.external_id} -> discipline={activity.discipline} start={activity.start_time.isoformat()}"
    )
    return activity


def athlete_profile_from_strava(raw: dict[str, Any]) -> dict[str, Any]:
    """Extract Athlete profile fields from a Strava /athlete payload."""
    return {
        "first_name": _str(raw.get("firstname")),
        "last_name": _str(raw.get("lastname")),
        "city": _str(raw.get("city")),
        "state": _str(raw.get("state")),
        "country": _str(raw.get("country")),
        "sex": _str(raw.get("sex")),
        "weight": _float(raw.get("weight")),
        "profile_picture_url": _str(raw.get("profile")),
    }
