"""OAuth handshake start and completion, and user-initiated disconnect.

Starting a connection records a single-use state (and, for PKCE providers,
the code verifier) server side. The callback only trusts the athlete and
verifier stored under the state the provider echoes back.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from loguru import logger
from pydantic import BaseModel

from activity_sync.config.settings import settings
from activity_sync.core.errors import AuthError, ProviderNetworkError
from activity_sync.core.encryption import EncryptionError, decrypt_token
from activity_sync.db.models import Athlete
from activity_sync.db.session import get_session
from activity_sync.ingestion.credentials import (
    consume_oauth_state,
    create_oauth_state,
    disconnect_credential,
    get_credential,
    save_token_grant,
    update_athlete_profile,
)
from activity_sync.ingestion.normalize import athlete_profile_from_strava
from activity_sync.integrations.garmin.oauth import generate_code_challenge, generate_code_verifier
from activity_sync.integrations.registry import SUPPORTED_PROVIDERS, get_provider_client

router = APIRouter(prefix="/auth", tags=["auth"])


class DisconnectRequest(BaseModel):
    athlete_id: str


def _check_provider(provider: str) -> None:
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider {provider}")
    if provider == "garmin" and not settings.garmin_enabled:
        logger.warning("[OAUTH] Garmin integration disabled")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Garmin integration is not enabled")


@router.get("/{provider}/start")
def oauth_start(provider: str, athlete_id: str) -> dict:
    """Begin connecting a provider account.

    Returns:
        Provider authorization URL to send the athlete to, and the state it carries
    """
    _check_provider(provider)
    client = get_provider_client(provider)
    code_verifier = generate_code_verifier() if client.uses_pkce else None
    with get_session() as session:
        if session.get(Athlete, athlete_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Athlete {athlete_id} not found")
        pending = create_oauth_state(session, athlete_id, provider, code_verifier=code_verifier)
        session.commit()
        state = pending.state

    code_challenge = generate_code_challenge(code_verifier) if code_verifier else None
    return {
        "provider": provider,
        "state": state,
        "authorization_url": client.authorization_url(state, code_challenge=code_challenge),
    }


@router.get("/{provider}/callback")
def oauth_callback(
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> dict:
    """Complete the OAuth handshake.

    Args:
        provider: "strava" or "garmin"
        code: Authorization code from the provider redirect
        state: State issued by the start endpoint
        error: Provider error (user denied access)

    Returns:
        Connection summary without token material
    """
    _check_provider(provider)
    if not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing state")

    # The state is spent whatever happens next
    with get_session() as session:
        pending = consume_oauth_state(session, state, provider)
        session.commit()
        athlete_id = pending.athlete_id if pending else None
        code_verifier = pending.code_verifier if pending else None

    if athlete_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired state")
    if error:
        logger.warning(f"[OAUTH] {provider} authorization denied for athlete {athlete_id}: {error}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code")

    client = get_provider_client(provider)
    with get_session() as session:
        athlete = session.get(Athlete, athlete_id)
        if athlete is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Athlete {athlete_id} not found")
        try:
            grant = client.exchange_code(code, code_verifier=code_verifier)
        except AuthError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        except ProviderNetworkError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

        credential = save_token_grant(session, athlete, provider, grant)
        if provider == "strava" and grant.athlete:
            update_athlete_profile(athlete, athlete_profile_from_strava(grant.athlete))
        session.commit()
        return {
            "connected": True,
            "provider": provider,
            "athlete_id": athlete.id,
            "provider_user_id": credential.provider_user_id,
        }


@router.post("/{provider}/disconnect")
def disconnect(provider: str, request: DisconnectRequest) -> dict:
    """Revoke provider access (best effort) and clear stored tokens."""
    _check_provider(provider)
    with get_session() as session:
        credential = get_credential(session, request.athlete_id, provider)
        if credential is None or not credential.connected:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{provider} is not connected")

        if credential.access_token:
            try:
                get_provider_client(provider).revoke(decrypt_token(credential.access_token))
            except EncryptionError as e:
                logger.warning(f"[OAUTH] Skipping {provider} revoke, stored token unreadable: {e}")

        disconnect_credential(session, credential)
        session.commit()
        return {"connected": False, "provider": provider, "athlete_id": request.athlete_id}
