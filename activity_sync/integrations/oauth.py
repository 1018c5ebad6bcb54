"""Shared OAuth token endpoint call."""

from __future__ import annotations

from typing import Any

import requests
from loguru import logger

TOKEN_REQUEST_TIMEOUT_SECONDS = 10


def post_token_request(
    token_url: str,
    data: dict[str, Any],
    *,
    provider: str,
    timeout: float = TOKEN_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """POST form data to a provider token endpoint.

    Args:
        token_url: Provider OAuth token URL
        data: Form fields (grant_type, client credentials, code or refresh_token)
        provider: Provider name, for logging
        timeout: Request timeout in seconds

    Returns:
        Decoded token response

    Raises:
        requests.HTTPError: If the provider rejects the request
        requests.RequestException: If the provider cannot be reached
    """
    grant_type = data.get("grant_type")
    try:
        resp = requests.post(token_url, data=data, timeout=timeout)
        resp.raise_for_status()
        token_data = resp.json()
    except requests.HTTPError as e:
        status_code = e.response.status_code if e.response is not None else "Unknown"
        error_text = e.response.text if e.response is not None else "No response text"
        logger.error(f"[TOKEN] {provider} {grant_type} request failed: {status_code} - {error_text}")
        raise
    except requests.RequestException as e:
        logger.error(f"[TOKEN] {provider} {grant_type} request could not reach provider: {e}")
        raise
    else:
        logger.info(f"[TOKEN] {provider} {grant_type} request succeeded")
        return token_data
