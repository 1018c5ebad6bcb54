"""Garmin Health/Wellness API client.

Garmin pages with limit/offset and a hard maximum of 100 activities per
request; ping notifications carry a callbackURL fetched through
fetch_by_callback.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from activity_sync.config.settings import settings
from activity_sync.integrations.base import ProviderClient
from activity_sync.integrations.garmin import oauth
from activity_sync.utils.timezone import to_epoch

GARMIN_API_BASE_URL = "https://apis.garmin.com/wellness-api/rest"
GARMIN_MAX_PER_PAGE = 100


class GarminClient(ProviderClient):
    provider = "garmin"
    page_size = GARMIN_MAX_PER_PAGE
    activities_url = f"{GARMIN_API_BASE_URL}/activities"
    athlete_url = f"{GARMIN_API_BASE_URL}/user/id"
    uses_pkce = True

    def _page_params(self, page: int, after: datetime | None, before: datetime | None) -> dict[str, Any]:
        params: dict[str, Any] = {
            "limit": self.page_size,
            "offset": (page - 1) * self.page_size,
        }
        if after is not None:
            params["uploadStartTimeInSeconds"] = to_epoch(after)
        if before is not None:
            params["uploadEndTimeInSeconds"] = to_epoch(before)
        return params

    def _extract_page(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, dict):
            activities = payload.get("activities")
            return activities if isinstance(activities, list) else []
        return super()._extract_page(payload)

    def activity_url(self, activity_id: str) -> str:
        return f"{GARMIN_API_BASE_URL}/activities/{activity_id}"

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        if not code_challenge:
            raise ValueError("Garmin authorization requires a PKCE code challenge")
        return oauth.build_authorization_url(
            client_id=settings.garmin_client_id,
            redirect_uri=settings.garmin_redirect_uri,
            state=state,
            code_challenge=code_challenge,
        )

    def _request_refresh(self, refresh_token: str, *, timeout: float) -> dict[str, Any]:
        return oauth.refresh_access_token(
            client_id=settings.garmin_client_id,
            client_secret=settings.garmin_client_secret,
            refresh_token=refresh_token,
            timeout=timeout,
        )

    def _request_code_exchange(self, code: str, **kwargs: Any) -> dict[str, Any]:
        return oauth.exchange_code_for_token(
            client_id=settings.garmin_client_id,
            client_secret=settings.garmin_client_secret,
            code=code,
            redirect_uri=settings.garmin_redirect_uri,
            code_verifier=kwargs.get("code_verifier"),
        )

    def _provider_user_id(self, token_data: dict[str, Any], access_token: str) -> str:
        # Garmin's token response has no user id; it comes from /user/id
        return str(self.fetch_athlete(access_token)["userId"])
