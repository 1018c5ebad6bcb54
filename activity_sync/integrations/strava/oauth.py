from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import requests
from loguru import logger

from activity_sync.integrations.oauth import TOKEN_REQUEST_TIMEOUT_SECONDS, post_token_request

STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
STRAVA_SCOPE = "read,activity:read_all"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"


def build_authorization_url(*, client_id: str, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": STRAVA_SCOPE,
        "approval_prompt": "auto",
        "state": state,
    }
    return f"{STRAVA_AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_token(
    *,
    client_id: str,
    client_secret: str,
    code: str,
) -> dict[str, Any]:
    """Exchange Strava authorization code for access token.

    Args:
        client_id: Strava application client ID
        client_secret: Strava application client secret
        code: Authorization code from Strava callback

    Returns:
        Token response containing access_token, refresh_token, expires_at and athlete

    Raises:
        requests.HTTPError: If token exchange fails
    """
    return post_token_request(
        STRAVA_TOKEN_URL,
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
        },
        provider="strava",
    )


def refresh_access_token(
    *,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    timeout: float = TOKEN_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Refresh a Strava access token.

    Strava may rotate the refresh token; the response's refresh_token replaces the stored one.

    Raises:
        requests.HTTPError: If token refresh fails
    """
    return post_token_request(
        STRAVA_TOKEN_URL,
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        provider="strava",
        timeout=timeout,
    )


def deauthorize(access_token: str) -> None:
    """Revoke the app's access at Strava. Best effort: failures are logged only."""
    try:
        resp = requests.post(
            STRAVA_DEAUTHORIZE_URL,
            data={"access_token": access_token},
            timeout=TOKEN_REQUEST_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"[TOKEN] Strava deauthorize failed (continuing with local disconnect): {e}")
    else:
        logger.info("[TOKEN] Strava access revoked")
