"""Garmin OAuth 2.0 (PKCE) token exchange utilities."""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Any
from urllib.parse import urlencode

from activity_sync.integrations.oauth import TOKEN_REQUEST_TIMEOUT_SECONDS, post_token_request

GARMIN_AUTHORIZE_URL = "https://connect.garmin.com/oauth2Confirm"
GARMIN_TOKEN_URL = "https://diauth.garmin.com/di-oauth2-service/oauth/token"


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier (64 URL-safe characters, within the 43-128 limit)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(48)).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """S256 code challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def build_authorization_url(*, client_id: str, redirect_uri: str, state: str, code_challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"{GARMIN_AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_token(
    *,
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    code_verifier: str | None = None,
) -> dict[str, Any]:
    """Exchange Garmin authorization code for access token.

    Args:
        client_id: Garmin application client ID
        client_secret: Garmin application client secret
        code: Authorization code from Garmin callback
        redirect_uri: Redirect URI used in authorization (must match exactly)
        code_verifier: PKCE verifier generated when the authorization URL was built

    Returns:
        Token response containing access_token, refresh_token and expires_in

    Raises:
        requests.HTTPError: If token exchange fails
    """
    data = {
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": redirect_uri,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier
    return post_token_request(GARMIN_TOKEN_URL, data, provider="garmin")


def refresh_access_token(
    *,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    timeout: float = TOKEN_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Refresh Garmin access token using refresh token.

    Raises:
        requests.HTTPError: If token refresh fails
    """
    return post_token_request(
        GARMIN_TOKEN_URL,
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        provider="garmin",
        timeout=timeout,
    )
