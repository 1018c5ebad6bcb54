"""Push notification for newly synced activities (FCM legacy HTTP API).

Notification failures never propagate: a missing device token or server key
skips the push, and HTTP errors are logged.
"""

from __future__ import annotations

import random

import httpx
from loguru import logger

from activity_sync.config.settings import settings
from activity_sync.db.models import Activity, Athlete
from activity_sync.ingestion.disciplines import Discipline

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"
FCM_TIMEOUT_SECONDS = 3.0
METERS_PER_MILE = 1609.344

CONGRATULATORY_TITLES = (
    "You crushed it! 💪",
    "Another one in the books! 🔥",
    "Way to show up! 🏆",
    "Legend status! ⭐",
    "Nailed it! 🎯",
)

DISCIPLINE_NAMES: dict[int, str] = {
    Discipline.RUN: "run",
    Discipline.RIDE: "ride",
    Discipline.WALK: "walk",
    Discipline.HIKE: "hike",
    Discipline.VIRTUAL_RIDE: "virtual ride",
    Discipline.VIRTUAL_RUN: "virtual run",
    Discipline.SWIM: "swim",
    Discipline.WORKOUT: "workout",
    Discipline.WEIGHT_TRAINING: "strength session",
    Discipline.YOGA: "yoga session",
    Discipline.CROSSFIT: "CrossFit workout",
    Discipline.ELLIPTICAL: "elliptical session",
    Discipline.ROWING: "rowing session",
    Discipline.ROCK_CLIMBING: "climbing session",
    Discipline.ALPINE_SKI: "ski session",
    Discipline.SNOWBOARD: "snowboard session",
    Discipline.MOUNTAIN_BIKE_RIDE: "mountain bike ride",
    Discipline.GRAVEL_RIDE: "gravel ride",
    Discipline.TRAIL_RUN: "trail run",
    Discipline.GOLF: "round of golf",
}


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes} min"


def build_notification_body(athlete: Athlete, activity: Activity) -> str:
    name = athlete.first_name or "Athlete"
    kind = DISCIPLINE_NAMES.get(activity.discipline, "workout")
    duration = format_duration(activity.moving_time or activity.elapsed_time or 0)
    if activity.distance:
        miles = activity.distance / METERS_PER_MILE
        return f"{name} just logged a {miles:.1f} mile {kind} in {duration}!"
    return f"{name} just crushed a {duration} {kind}!"


def notify_activity_created(athlete: Athlete, activity: Activity, *, timeout: float = FCM_TIMEOUT_SECONDS) -> bool:
    """Send a push notification for a new activity.

    Args:
        athlete: Recipient; skipped without a device token
        activity: The newly stored activity
        timeout: FCM request timeout in seconds

    Returns:
        True if FCM accepted the message, False if skipped or failed
    """
    if not athlete.fcm_token:
        logger.debug(f"[NOTIFY] No device token for athlete {athlete.id}, skipping")
        return False
    if not settings.fcm_server_key:
        logger.debug("[NOTIFY] FCM_SERVER_KEY not set, skipping")
        return False

    payload = {
        "to": athlete.fcm_token,
        "notification": {
            "title": random.choice(CONGRATULATORY_TITLES),
            "body": build_notification_body(athlete, activity),
            "sound": "default",
        },
        "data": {
            "sync_type": "new_activity",
            "activity_id": activity.id,
            "discipline": str(activity.discipline),
        },
    }
    try:
        resp = httpx.post(
            FCM_SEND_URL,
            headers={"Authorization": f"key={settings.fcm_server_key}"},
            json=payload,
            timeout=timeout,
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"[NOTIFY] Push notification for activity {activity.id} failed: {e}")
        return False
    else:
        logger.info(f"[NOTIFY] Push notification sent to athlete {athlete.id} for activity {activity.id}")
        return True
