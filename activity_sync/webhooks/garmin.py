"""Garmin webhook endpoints.

Garmin notifies in two formats:
- push: activity summaries inline under activities / manuallyUpdatedActivities / moveIQActivities
- ping: items carrying a callbackURL that must be fetched with the user's token

Deregistrations disconnect the user. Every request is acknowledged with 200,
including processing errors, so Garmin does not retry.
"""

from __future__ import annotations

import json
from collections import Counter
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.concurrency import run_in_threadpool

from activity_sync.config.settings import settings
from activity_sync.db.session import get_session
from activity_sync.ingestion.credentials import disconnect_credential, get_credential_by_provider_user
from activity_sync.ingestion.single_activity import fetch_by_callback, ingest_activity, store_raw_activities
from activity_sync.integrations.registry import get_provider_client

router = APIRouter(prefix="/webhooks/garmin", tags=["webhooks", "garmin"])

PROVIDER = "garmin"
ACTIVITY_KEYS = ("activities", "manuallyUpdatedActivities", "moveIQActivities")


def _handle_deregistration(item: dict[str, Any]) -> str:
    user_id = item.get("userId")
    if not user_id:
        return "skipped"
    with get_session() as session:
        credential = get_credential_by_provider_user(session, PROVIDER, user_id)
        if credential is None:
            return "skipped"
        disconnect_credential(session, credential)
        session.commit()
    logger.info(f"[GARMIN_WEBHOOK] Deregistered Garmin user {user_id}")
    return "deregistered"


def _handle_activity_item(item: dict[str, Any]) -> str:
    user_id = item.get("userId")
    if not user_id:
        logger.warning("[GARMIN_WEBHOOK] Activity notification without userId, skipping")
        return "skipped"

    with get_session() as session:
        credential = get_credential_by_provider_user(session, PROVIDER, user_id)
        if credential is None or not credential.connected:
            logger.info(f"[GARMIN_WEBHOOK] Ignoring activity for disconnected Garmin user {user_id}")
            return "ignored"

        callback_url = item.get("callbackURL")
        if callback_url:
            client = get_provider_client(
                PROVIDER,
                timeout=settings.webhook_http_timeout_seconds,
                token_timeout=settings.webhook_http_timeout_seconds,
            )
            ingest_activity(session, credential, client, fetch_by_callback(callback_url), notify=True)
        else:
            store_raw_activities(
                session,
                athlete_id=credential.athlete_id,
                provider=PROVIDER,
                raw_activities=[item],
                notify=True,
            )
    return "processed"


def handle_garmin_notification(payload: dict[str, Any]) -> Counter:
    """Process every item of a notification independently.

    Returns:
        Counter of item outcomes (processed, ignored, skipped, deregistered, failed)
    """
    outcomes: Counter = Counter()
    for item in payload.get("deregistrations") or []:
        try:
            outcomes[_handle_deregistration(item)] += 1
        except Exception as e:
            logger.exception(f"[GARMIN_WEBHOOK] Deregistration failed for {item.get('userId')}: {e}")
            outcomes["failed"] += 1

    for key in ACTIVITY_KEYS:
        for item in payload.get(key) or []:
            if not isinstance(item, dict):
                outcomes["skipped"] += 1
                continue
            try:
                outcomes[_handle_activity_item(item)] += 1
            except Exception as e:
                logger.exception(f"[GARMIN_WEBHOOK] Failed to process {key} item {item.get('activityId') or item.get('summaryId')}: {e}")
                outcomes["failed"] += 1
    return outcomes


@router.post("/activities")
async def garmin_webhook_activities(request: Request) -> JSONResponse:
    """Handle Garmin activity and deregistration notifications.

    Returns:
        200 with per-outcome counts, or a warning when the body could not be processed
    """
    if not settings.garmin_enabled:
        logger.debug("[GARMIN_WEBHOOK] Garmin disabled, ignoring notification")
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "status": "ignored"})

    try:
        payload = json.loads(await request.body())
        if not isinstance(payload, dict):
            raise ValueError("notification body is not an object")
        outcomes = await run_in_threadpool(handle_garmin_notification, payload)
    except Exception as e:
        logger.exception(f"[GARMIN_WEBHOOK] Error processing notification: {e}")
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "warning": "Error processing"})

    logger.info(f"[GARMIN_WEBHOOK] Notification handled: {dict(outcomes)}")
    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, **dict(outcomes)})
