from __future__ import annotations

from datetime import datetime
from typing import Any

from activity_sync.config.settings import settings
from activity_sync.integrations.base import ProviderClient
from activity_sync.integrations.strava import oauth
from activity_sync.utils.timezone import to_epoch

STRAVA_BASE_URL = "https://www.strava.com/api/v3"
STRAVA_MAX_PER_PAGE = 200


class StravaClient(ProviderClient):
    """Strava API v3 client.

    - Page-numbered pagination, 200 activities per page (Strava maximum)
    - after/before as Unix timestamps
    """

    provider = "strava"
    page_size = STRAVA_MAX_PER_PAGE
    activities_url = f"{STRAVA_BASE_URL}/athlete/activities"
    athlete_url = f"{STRAVA_BASE_URL}/athlete"

    def _page_params(self, page: int, after: datetime | None, before: datetime | None) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "per_page": self.page_size}
        if after is not None:
            params["after"] = to_epoch(after)
        if before is not None:
            params["before"] = to_epoch(before)
        return params

    def activity_url(self, activity_id: str) -> str:
        return f"{STRAVA_BASE_URL}/activities/{activity_id}"

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        return oauth.build_authorization_url(
            client_id=settings.strava_client_id,
            redirect_uri=settings.strava_redirect_uri,
            state=state,
        )

    def _request_refresh(self, refresh_token: str, *, timeout: float) -> dict[str, Any]:
        return oauth.refresh_access_token(
            client_id=settings.strava_client_id,
            client_secret=settings.strava_client_secret,
            refresh_token=refresh_token,
            timeout=timeout,
        )

    def _request_code_exchange(self, code: str, **kwargs: Any) -> dict[str, Any]:
        return oauth.exchange_code_for_token(
            client_id=settings.strava_client_id,
            client_secret=settings.strava_client_secret,
            code=code,
        )

    def _provider_user_id(self, token_data: dict[str, Any], access_token: str) -> str:
        athlete = token_data.get("athlete") or self.fetch_athlete(access_token)
        return str(athlete["id"])

    def revoke(self, access_token: str) -> None:
        oauth.deauthorize(access_token)
