"""Webhook-driven ingestion of one activity (or one notification's worth).

Fetch strategies unify Strava's "fetch by id", Garmin's ping "fetch by
callback URL" and Garmin's push "payload already inline" behind one
normalize -> reconcile -> store pipeline.

Webhook deliveries run under a Deadline: the token refresh and the activity
fetch always run (with timeouts capped to the time left), while the profile
refresh and push notifications are skipped once the deadline has passed.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from activity_sync.config.settings import settings
from activity_sync.db.models import Activity, Athlete, OAuthCredential
from activity_sync.ingestion.credentials import ensure_fresh_access_token, update_athlete_profile
from activity_sync.ingestion.normalize import athlete_profile_from_strava, normalize
from activity_sync.ingestion.save_activities import StoreAction, StoreResult, store_activity
from activity_sync.integrations.base import ProviderClient
from activity_sync.integrations.registry import get_provider_client
from activity_sync.services.notifications import FCM_TIMEOUT_SECONDS, notify_activity_created
from activity_sync.utils.deadline import Deadline

FetchStrategy = Callable[[ProviderClient, str], list[dict[str, Any]]]


def webhook_deadline() -> Deadline:
    return Deadline(settings.webhook_response_budget_seconds)


def webhook_client(provider: str, deadline: Deadline) -> ProviderClient:
    """Provider client whose requests fit the webhook response budget."""
    return get_provider_client(
        provider,
        timeout=settings.webhook_http_timeout_seconds,
        token_timeout=settings.webhook_http_timeout_seconds,
        deadline=deadline,
    )


def fetch_by_id(activity_id: str | int) -> FetchStrategy:
    def _fetch(client: ProviderClient, access_token: str) -> list[dict[str, Any]]:
        return [client.fetch_activity(access_token, str(activity_id))]

    return _fetch


def fetch_by_callback(callback_url: str) -> FetchStrategy:
    def _fetch(client: ProviderClient, access_token: str) -> list[dict[str, Any]]:
        return client.fetch_by_callback(access_token, callback_url)

    return _fetch


def _notify(session: Session, athlete_id: str, activity_id: str, deadline: Deadline | None) -> None:
    if deadline is not None and deadline.expired:
        logger.warning(f"[INGEST] Response budget spent after {deadline.elapsed():.2f}s, skipping notification for {activity_id}")
        return
    athlete = session.get(Athlete, athlete_id)
    activity = session.get(Activity, activity_id)
    if athlete is not None and activity is not None:
        timeout = deadline.cap(FCM_TIMEOUT_SECONDS) if deadline is not None else FCM_TIMEOUT_SECONDS
        notify_activity_created(athlete, activity, timeout=timeout)


def store_raw_activities(
    session: Session,
    *,
    athlete_id: str,
    provider: str,
    raw_activities: list[dict[str, Any]],
    notify: bool = False,
    deadline: Deadline | None = None,
) -> list[StoreResult]:
    """Normalize and store payloads, committing after each one.

    Raises:
        NormalizationError / PersistenceError: First payload that fails (webhook
            callers log and acknowledge)
    """
    results: list[StoreResult] = []
    for raw in raw_activities:
        result = store_activity(session, normalize(raw, athlete_id, provider))
        session.commit()
        results.append(result)
        logger.info(f"[INGEST] {provider} activity for athlete {athlete_id}: {result.action.value} {result.activity_id}")

        if notify and result.action == StoreAction.INSERTED:
            _notify(session, athlete_id, result.activity_id, deadline)
    return results


def ingest_activity(
    session: Session,
    credential: OAuthCredential,
    client: ProviderClient,
    fetch: FetchStrategy,
    *,
    refresh_profile: bool = False,
    notify: bool = False,
    deadline: Deadline | None = None,
) -> list[StoreResult]:
    """Refresh the token if needed, fetch, then store.

    Args:
        session: Database session
        credential: Connected credential of the athlete the notification is for
        client: Provider client
        fetch: Strategy returning raw payloads for this notification
        refresh_profile: Also refresh the athlete's profile from the provider
        notify: Send a push notification for newly inserted activities
        deadline: Response budget; optional steps are skipped once it has passed

    Returns:
        One StoreResult per stored payload
    """
    access_token = ensure_fresh_access_token(session, credential, client)
    raw_activities = fetch(client, access_token)

    if refresh_profile:
        if deadline is not None and deadline.expired:
            logger.warning(
                f"[INGEST] Response budget spent after {deadline.elapsed():.2f}s, skipping profile refresh for athlete {credential.athlete_id}"
            )
        else:
            try:
                _refresh_athlete_profile(session, credential, client, access_token)
            except Exception as e:
                session.rollback()
                logger.warning(f"[INGEST] Profile refresh failed for athlete {credential.athlete_id}: {e}")

    return store_raw_activities(
        session,
        athlete_id=credential.athlete_id,
        provider=credential.provider,
        raw_activities=raw_activities,
        notify=notify,
        deadline=deadline,
    )


def _refresh_athlete_profile(session: Session, credential: OAuthCredential, client: ProviderClient, access_token: str) -> None:
    athlete = session.get(Athlete, credential.athlete_id)
    if athlete is None or credential.provider != "strava":
        return
    update_athlete_profile(athlete, athlete_profile_from_strava(client.fetch_athlete(access_token)))
    session.commit()
