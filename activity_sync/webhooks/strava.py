"""Strava webhook endpoints (push subscriptions).

GET  /webhooks/strava  subscription handshake, no database access
POST /webhooks/strava  event delivery

Strava retries non-200 deliveries aggressively, so every processing error is
logged and acknowledged with 200. Only a malformed body or a create event
without object_id/owner_id gets a 400.
"""

from __future__ import annotations

import hmac
import json
from enum import StrEnum
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from loguru import logger
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from activity_sync.config.settings import settings
from activity_sync.db.session import get_session
from activity_sync.ingestion.credentials import disconnect_credential, get_credential_by_provider_user
from activity_sync.ingestion.save_activities import find_by_identity
from activity_sync.ingestion.single_activity import fetch_by_id, ingest_activity, webhook_client, webhook_deadline
from activity_sync.utils.deadline import Deadline

router = APIRouter(prefix="/webhooks/strava", tags=["webhooks", "strava"])

PROVIDER = "strava"


class WebhookAck(StrEnum):
    EVENT_RECEIVED = "EVENT_RECEIVED"
    IGNORED_DISCONNECTED_USER = "IGNORED_DISCONNECTED_USER"
    DEAUTH_PROCESSED = "DEAUTH_PROCESSED"
    DEAUTH_FAILED = "DEAUTH_FAILED"
    UPDATE_ACKNOWLEDGED = "UPDATE_ACKNOWLEDGED"
    DELETE_ACKNOWLEDGED = "DELETE_ACKNOWLEDGED"
    EVENT_ACKNOWLEDGED = "EVENT_ACKNOWLEDGED"
    ERROR_LOGGED = "ERROR_LOGGED"


class StravaWebhookEvent(BaseModel):
    aspect_type: str | None = None
    object_type: str | None = None
    object_id: int | None = None
    owner_id: int | None = None
    subscription_id: int | None = None
    event_time: int | None = None
    updates: dict[str, Any] | None = None

    @property
    def is_deauthorization(self) -> bool:
        authorized = (self.updates or {}).get("authorized")
        return self.aspect_type == "update" and authorized in ("false", False)


def verify_subscription(mode: str | None, verify_token: str | None, challenge: str | None) -> bool:
    """Check a subscription handshake against STRAVA_WEBHOOK_VERIFY_TOKEN."""
    if mode != "subscribe" or not verify_token or challenge is None:
        return False
    return hmac.compare_digest(verify_token.encode(), settings.strava_webhook_verify_token.encode())


@router.get("")
def webhook_verification(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> dict[str, str]:
    """Handle Strava webhook subscription verification.

    Returns:
        {"hub.challenge": challenge} when the token matches

    Raises:
        HTTPException: 403 on wrong mode or token
    """
    if not verify_subscription(hub_mode, hub_verify_token, hub_challenge):
        logger.warning(f"[STRAVA_WEBHOOK] Subscription verification rejected (mode={hub_mode})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    logger.info("[STRAVA_WEBHOOK] Subscription verified")
    return {"hub.challenge": hub_challenge}


def _handle_deauthorization(event: StravaWebhookEvent) -> WebhookAck:
    try:
        with get_session() as session:
            credential = get_credential_by_provider_user(session, PROVIDER, event.owner_id)
            if credential is None:
                logger.info(f"[STRAVA_WEBHOOK] Deauthorization for unknown athlete {event.owner_id}")
                return WebhookAck.DEAUTH_PROCESSED
            disconnect_credential(session, credential)
            session.commit()
    except Exception as e:
        logger.exception(f"[STRAVA_WEBHOOK] Deauthorization failed for athlete {event.owner_id}: {e}")
        return WebhookAck.DEAUTH_FAILED
    logger.info(f"[STRAVA_WEBHOOK] Deauthorized athlete {event.owner_id}")
    return WebhookAck.DEAUTH_PROCESSED


def _handle_activity_create(event: StravaWebhookEvent, deadline: Deadline) -> WebhookAck:
    client = webhook_client(PROVIDER, deadline)
    with get_session() as session:
        credential = get_credential_by_provider_user(session, PROVIDER, event.owner_id)
        if credential is None or not credential.connected:
            logger.info(f"[STRAVA_WEBHOOK] Ignoring activity {event.object_id}: athlete {event.owner_id} not connected")
            return WebhookAck.IGNORED_DISCONNECTED_USER
        ingest_activity(
            session,
            credential,
            client,
            fetch_by_id(event.object_id),
            refresh_profile=True,
            notify=True,
            deadline=deadline,
        )
    return WebhookAck.EVENT_RECEIVED


def _handle_activity_update(event: StravaWebhookEvent, deadline: Deadline) -> WebhookAck:
    if not settings.webhook_refetch_on_update or event.object_id is None or event.owner_id is None:
        return WebhookAck.UPDATE_ACKNOWLEDGED
    if deadline.expired:
        logger.info(f"[STRAVA_WEBHOOK] Response budget spent, not refreshing activity {event.object_id}")
        return WebhookAck.UPDATE_ACKNOWLEDGED
    try:
        client = webhook_client(PROVIDER, deadline)
        with get_session() as session:
            credential = get_credential_by_provider_user(session, PROVIDER, event.owner_id)
            if credential is None or not credential.connected:
                return WebhookAck.UPDATE_ACKNOWLEDGED
            if find_by_identity(session, PROVIDER, str(event.object_id)) is None:
                logger.debug(f"[STRAVA_WEBHOOK] Update for unknown activity {event.object_id}, nothing to refresh")
                return WebhookAck.UPDATE_ACKNOWLEDGED
            ingest_activity(session, credential, client, fetch_by_id(event.object_id), deadline=deadline)
    except Exception as e:
        logger.warning(f"[STRAVA_WEBHOOK] Best-effort refresh of activity {event.object_id} failed: {e}")
    return WebhookAck.UPDATE_ACKNOWLEDGED


def handle_strava_event(event: StravaWebhookEvent, deadline: Deadline | None = None) -> WebhookAck:
    """Dispatch an event by (aspect_type, object_type).

    Args:
        event: Parsed Strava event
        deadline: Response budget, started when the request arrived

    Returns:
        Acknowledgment string sent back to Strava
    """
    if deadline is None:
        deadline = webhook_deadline()
    if event.is_deauthorization:
        return _handle_deauthorization(event)
    if event.object_type != "activity":
        return WebhookAck.EVENT_ACKNOWLEDGED
    if event.aspect_type == "create":
        return _handle_activity_create(event, deadline)
    if event.aspect_type == "update":
        return _handle_activity_update(event, deadline)
    if event.aspect_type == "delete":
        # Stored activities are kept; deletion belongs to the account owner's tools
        return WebhookAck.DELETE_ACKNOWLEDGED
    return WebhookAck.EVENT_ACKNOWLEDGED


@router.post("")
async def strava_webhook_event(request: Request) -> PlainTextResponse:
    """Receive a Strava event and acknowledge it within Strava's response deadline."""
    deadline = webhook_deadline()
    try:
        payload = json.loads(await request.body())
        event = StravaWebhookEvent.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"[STRAVA_WEBHOOK] Malformed event body: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed event") from e

    logger.info(
        f"[STRAVA_WEBHOOK] Event {event.aspect_type}/{event.object_type} object_id={event.object_id} owner_id={event.owner_id}"
    )
    if event.aspect_type == "create" and event.object_type == "activity" and (event.object_id is None or event.owner_id is None):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing object_id or owner_id")

    try:
        ack = await run_in_threadpool(handle_strava_event, event, deadline)
    except Exception as e:
        logger.exception(f"[STRAVA_WEBHOOK] Error processing {event.aspect_type}/{event.object_type} {event.object_id}: {e}")
        ack = WebhookAck.ERROR_LOGGED
    return PlainTextResponse(ack.value, status_code=status.HTTP_200_OK)
