"""Provider API client base.

Clients hold no token state: every call receives the live access token from
the caller, which is responsible for refreshing and persisting credentials
before the call (see ingestion.credentials).

Pagination contract shared by all providers:
- fixed provider page size, ascending page order
- stop on a short or empty page, on reaching max_activities, or at the page cap
- sleep between page requests to respect the provider rate limit
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import requests
from loguru import logger

from activity_sync.config.settings import settings
from activity_sync.core.errors import (
    AuthError,
    ProviderError,
    ProviderNetworkError,
    RateLimitError,
    RefreshError,
)
from activity_sync.integrations.oauth import TOKEN_REQUEST_TIMEOUT_SECONDS
from activity_sync.utils.deadline import Deadline
from activity_sync.utils.timezone import from_epoch

DEFAULT_TOKEN_LIFETIME = timedelta(hours=6)


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair with its expiry."""

    access_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def from_token_response(cls, data: dict[str, Any], *, current_refresh_token: str | None = None) -> TokenPair:
        """Build from a provider token response.

        Strava returns expires_at (epoch seconds), Garmin returns expires_in.
        Providers that do not rotate refresh tokens omit refresh_token on refresh.
        """
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token") or current_refresh_token
        if not access_token or not refresh_token:
            raise ValueError("Token response missing access_token or refresh_token")

        expires_at = from_epoch(data.get("expires_at"))
        if expires_at is None:
            expires_in = data.get("expires_in")
            lifetime = timedelta(seconds=int(expires_in)) if expires_in else DEFAULT_TOKEN_LIFETIME
            expires_at = datetime.now(timezone.utc) + lifetime
        return cls(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)


@dataclass(frozen=True)
class TokenGrant:
    """Result of a completed OAuth handshake."""

    tokens: TokenPair
    provider_user_id: str
    scope: str | None = None
    athlete: dict[str, Any] | None = None


def _retry_after(resp: httpx.Response) -> int | None:
    value = resp.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None


class ProviderClient:
    """Base class for provider REST clients.

    Subclasses set provider, page_size and activities_url, and implement the
    provider specific hooks (_page_params, activity_url, athlete_url, token calls).
    With a deadline, every request timeout (token calls included) is capped
    to the time the deadline has left.
    """

    provider: str = ""
    page_size: int = 100
    activities_url: str = ""
    athlete_url: str = ""
    # Whether the authorization step needs a PKCE code verifier
    uses_pkce: bool = False

    def __init__(
        self,
        *,
        page_delay_seconds: float | None = None,
        max_pages: int | None = None,
        timeout: float | None = None,
        token_timeout: float | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        self.page_delay_seconds = settings.provider_page_delay_seconds if page_delay_seconds is None else page_delay_seconds
        self.max_pages = settings.provider_max_pages if max_pages is None else max_pages
        self.timeout = settings.provider_http_timeout_seconds if timeout is None else timeout
        self.token_timeout = TOKEN_REQUEST_TIMEOUT_SECONDS if token_timeout is None else token_timeout
        self.deadline = deadline

    def _request_timeout(self, timeout: float) -> float:
        return self.deadline.cap(timeout) if self.deadline is not None else timeout

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status_code = resp.status_code
        if 200 <= status_code < 300:
            return
        body = resp.text
        if status_code in {401, 403}:
            raise AuthError(f"{self.provider} rejected the access token ({status_code}): {body[:200]}", provider=self.provider)
        if status_code == 429:
            raise RateLimitError(
                f"{self.provider} rate limit exceeded",
                provider=self.provider,
                retry_after=_retry_after(resp),
            )
        raise ProviderError(
            f"{self.provider} API error {status_code}: {body[:500]}",
            provider=self.provider,
            status_code=status_code,
            body=body,
        )

    def _get(self, url: str, access_token: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = httpx.get(url, headers=self._headers(access_token), params=params, timeout=self._request_timeout(self.timeout))
        except httpx.TransportError as e:
            logger.warning(f"[PROVIDER] {self.provider} request to {url} failed: {e}")
            raise ProviderNetworkError(f"{self.provider} unreachable: {e}", provider=self.provider) from e
        self._raise_for_status(resp)
        return resp.json()

    def _page_params(self, page: int, after: datetime | None, before: datetime | None) -> dict[str, Any]:
        raise NotImplementedError

    def _extract_page(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        return []

    def activity_url(self, activity_id: str) -> str:
        raise NotImplementedError

    def fetch_activities(
        self,
        access_token: str,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
        max_activities: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch raw activities page by page.

        Args:
            access_token: Live (non-expired) access token
            after: Only activities starting after this time
            before: Only activities starting before this time
            max_activities: Optional cap on the number of activities returned

        Returns:
            Raw provider activity payloads in the order the provider returned them

        Raises:
            AuthError: Token rejected
            RateLimitError: Provider throttled the request
            ProviderError: Any other non-2xx response
            ProviderNetworkError: Provider unreachable
        """
        activities: list[dict[str, Any]] = []
        page = 1
        while True:
            if page > self.max_pages:
                logger.warning(f"[PROVIDER] {self.provider} reached the {self.max_pages} page safety cap, stopping pagination")
                break
            if page > 1:
                time.sleep(self.page_delay_seconds)

            batch = self._extract_page(self._get(self.activities_url, access_token, self._page_params(page, after, before)))
            activities.extend(batch)
            logger.debug(f"[PROVIDER] {self.provider} page {page}: {len(batch)} activities (total {len(activities)})")

            if max_activities is not None and len(activities) >= max_activities:
                activities = activities[:max_activities]
                break
            if len(batch) < self.page_size:
                break
            page += 1

        logger.info(f"[PROVIDER] Fetched {len(activities)} {self.provider} activities in {page} page(s)")
        return activities

    def fetch_activity(self, access_token: str, activity_id: str) -> dict[str, Any]:
        """Fetch a single activity by provider id."""
        return self._get(self.activity_url(activity_id), access_token)

    def fetch_athlete(self, access_token: str) -> dict[str, Any]:
        """Fetch the authenticated athlete's provider profile."""
        return self._get(self.athlete_url, access_token)

    def fetch_by_callback(self, access_token: str, callback_url: str) -> list[dict[str, Any]]:
        """Fetch activities from a provider-supplied callback URL (ping notifications).

        The callback may return a list or a single activity object.
        """
        payload = self._get(callback_url, access_token)
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            nested = payload.get("activities")
            if isinstance(nested, list):
                return nested
            return [payload]
        return []

    def authorization_url(self, state: str, code_challenge: str | None = None) -> str:
        raise NotImplementedError

    def _request_refresh(self, refresh_token: str, *, timeout: float) -> dict[str, Any]:
        raise NotImplementedError

    def _request_code_exchange(self, code: str, **kwargs: Any) -> dict[str, Any]:
        raise NotImplementedError

    def _provider_user_id(self, token_data: dict[str, Any], access_token: str) -> str:
        raise NotImplementedError

    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair.

        Persisting the returned pair is the caller's job.

        Raises:
            RefreshError: Provider rejected the refresh token or returned an unusable response
            ProviderNetworkError: Token endpoint unreachable
        """
        try:
            token_data = self._request_refresh(refresh_token, timeout=self._request_timeout(self.token_timeout))
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise RefreshError(
                f"{self.provider} token refresh rejected ({status_code})",
                provider=self.provider,
                status_code=status_code,
            ) from e
        except requests.RequestException as e:
            raise ProviderNetworkError(f"{self.provider} token endpoint unreachable: {e}", provider=self.provider) from e

        try:
            return TokenPair.from_token_response(token_data, current_refresh_token=refresh_token)
        except ValueError as e:
            raise RefreshError(f"{self.provider} token refresh returned an invalid response: {e}", provider=self.provider) from e

    def exchange_code(self, code: str, **kwargs: Any) -> TokenGrant:
        """Complete the OAuth handshake for an authorization code.

        Raises:
            AuthError: Provider rejected the code
            ProviderNetworkError: Token endpoint unreachable
        """
        try:
            token_data = self._request_code_exchange(code, **kwargs)
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise AuthError(f"{self.provider} authorization code rejected ({status_code})", provider=self.provider) from e
        except requests.RequestException as e:
            raise ProviderNetworkError(f"{self.provider} token endpoint unreachable: {e}", provider=self.provider) from e

        try:
            tokens = TokenPair.from_token_response(token_data)
        except ValueError as e:
            raise AuthError(f"{self.provider} token exchange returned an invalid response: {e}", provider=self.provider) from e

        return TokenGrant(
            tokens=tokens,
            provider_user_id=self._provider_user_id(token_data, tokens.access_token),
            scope=token_data.get("scope"),
            athlete=token_data.get("athlete"),
        )

    def revoke(self, access_token: str) -> None:
        """Revoke access at the provider. Providers without a revoke endpoint do nothing."""
