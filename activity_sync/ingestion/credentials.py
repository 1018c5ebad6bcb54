"""OAuth credential lifecycle: lookup, refresh-on-demand, connect, disconnect, pending handshake state.

An expired access token is never handed to a provider client. The credential
row is re-read before the expiry check so a token refreshed by a concurrent
job or webhook is reused instead of refreshed twice. Refreshed tokens are
committed before the caller gets them (last writer wins).
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from activity_sync.config.settings import settings
from activity_sync.core.encryption import EncryptionError, decrypt_token, encrypt_token
from activity_sync.core.errors import AuthError
from activity_sync.db.models import Athlete, OAuthCredential, OAuthState
from activity_sync.integrations.base import ProviderClient, TokenGrant, TokenPair
from activity_sync.utils.timezone import to_utc, utcnow


def get_credential(session: Session, athlete_id: str, provider: str) -> OAuthCredential | None:
    return session.execute(
        select(OAuthCredential).where(OAuthCredential.athlete_id == athlete_id, OAuthCredential.provider == provider)
    ).scalar_one_or_none()


def get_credential_by_provider_user(session: Session, provider: str, provider_user_id: str | int) -> OAuthCredential | None:
    """Look up a credential by the athlete's provider-side id (webhook owner_id / userId)."""
    return session.execute(
        select(OAuthCredential).where(
            OAuthCredential.provider == provider,
            OAuthCredential.provider_user_id == str(provider_user_id),
        )
    ).scalar_one_or_none()


def needs_refresh(credential: OAuthCredential, now: datetime, buffer_seconds: int | None = None) -> bool:
    """Whether the access token is expired or expires within the buffer."""
    if credential.expires_at is None:
        return True
    buffer = settings.token_refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
    return to_utc(credential.expires_at) <= now + timedelta(seconds=buffer)


def _store_tokens(credential: OAuthCredential, tokens: TokenPair, now: datetime) -> None:
    credential.access_token = encrypt_token(tokens.access_token)
    credential.refresh_token = encrypt_token(tokens.refresh_token)
    credential.expires_at = tokens.expires_at
    credential.updated_at = now


def _decrypt(credential: OAuthCredential, value: str | None, label: str) -> str:
    if not value:
        raise AuthError(f"{credential.provider} {label} missing for athlete {credential.athlete_id}", provider=credential.provider)
    try:
        return decrypt_token(value)
    except EncryptionError as e:
        raise AuthError(f"Stored {credential.provider} {label} cannot be decrypted: {e}", provider=credential.provider) from e


def ensure_fresh_access_token(
    session: Session,
    credential: OAuthCredential,
    client: ProviderClient,
    *,
    now: datetime | None = None,
) -> str:
    """Return a live access token, refreshing and persisting first when needed.

    Args:
        session: Database session; committed when tokens are refreshed
        credential: Credential row to use
        client: Provider client used for the refresh call
        now: Current time (for tests)

    Returns:
        Decrypted access token that is not expired

    Raises:
        AuthError: Credential disconnected, missing or undecryptable
        RefreshError: Provider rejected the refresh token
        ProviderNetworkError: Token endpoint unreachable
    """
    now = now or utcnow()
    # Pick up tokens another worker may have refreshed since this row was loaded
    session.refresh(credential)

    if not credential.connected:
        raise AuthError(f"{credential.provider} is disconnected for athlete {credential.athlete_id}", provider=credential.provider)

    if not needs_refresh(credential, now):
        return _decrypt(credential, credential.access_token, "access token")

    logger.info(f"[TOKEN] Refreshing {credential.provider} token for athlete {credential.athlete_id}")
    refresh_token = _decrypt(credential, credential.refresh_token, "refresh token")
    tokens = client.refresh(refresh_token)

    _store_tokens(credential, tokens, now)
    session.commit()
    logger.info(f"[TOKEN] Stored refreshed {credential.provider} token for athlete {credential.athlete_id}, expires_at={tokens.expires_at.isoformat()}")
    return tokens.access_token


def save_token_grant(
    session: Session,
    athlete: Athlete,
    provider: str,
    grant: TokenGrant,
    *,
    now: datetime | None = None,
) -> OAuthCredential:
    """Create or reconnect the athlete's credential after an OAuth handshake.

    A provider account previously linked to another athlete is moved to this one.
    """
    now = now or utcnow()
    credential = get_credential_by_provider_user(session, provider, grant.provider_user_id)
    if credential is not None and credential.athlete_id != athlete.id:
        logger.warning(
            f"[TOKEN] {provider} account {grant.provider_user_id} moving from athlete {credential.athlete_id} to {athlete.id}"
        )
        session.delete(credential)
        session.flush()
        credential = None
    if credential is None:
        credential = get_credential(session, athlete.id, provider)
    if credential is None:
        credential = OAuthCredential(athlete_id=athlete.id, provider=provider, provider_user_id=grant.provider_user_id)
        session.add(credential)

    credential.provider_user_id = grant.provider_user_id
    credential.scope = grant.scope
    credential.connected = True
    credential.connected_at = now
    credential.disconnected_at = None
    _store_tokens(credential, grant.tokens, now)
    session.flush()
    logger.info(f"[TOKEN] {provider} connected for athlete {athlete.id} (provider user {grant.provider_user_id})")
    return credential


def disconnect_credential(session: Session, credential: OAuthCredential, *, now: datetime | None = None) -> None:
    """Clear stored tokens and mark the credential disconnected."""
    now = now or utcnow()
    credential.access_token = None
    credential.refresh_token = None
    credential.expires_at = None
    credential.connected = False
    credential.disconnected_at = now
    credential.updated_at = now
    session.flush()
    logger.info(f"[TOKEN] {credential.provider} disconnected for athlete {credential.athlete_id}")


def update_athlete_profile(athlete: Athlete, profile: dict[str, Any], *, now: datetime | None = None) -> None:
    """Copy provider profile fields onto the athlete, skipping empty values."""
    for field, value in profile.items():
        if value is not None:
            setattr(athlete, field, value)
    athlete.updated_at = now or utcnow()


def create_oauth_state(
    session: Session,
    athlete_id: str,
    provider: str,
    *,
    code_verifier: str | None = None,
    now: datetime | None = None,
) -> OAuthState:
    """Record a pending OAuth handshake and purge the expired ones."""
    now = now or utcnow()
    session.execute(delete(OAuthState).where(OAuthState.expires_at < now).execution_options(synchronize_session=False))
    pending = OAuthState(
        state=secrets.token_urlsafe(32),
        athlete_id=athlete_id,
        provider=provider,
        code_verifier=code_verifier,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.oauth_state_ttl_minutes),
    )
    session.add(pending)
    session.flush()
    logger.info(f"[OAUTH] {provider} authorization started for athlete {athlete_id}")
    return pending


def consume_oauth_state(session: Session, state: str, provider: str, *, now: datetime | None = None) -> OAuthState | None:
    """Delete a pending handshake and return it if it is still valid.

    A state is single use: it is deleted even when expired or issued for
    another provider, in which case None is returned.
    """
    now = now or utcnow()
    pending = session.get(OAuthState, state)
    if pending is None:
        logger.warning(f"[OAUTH] Unknown {provider} state")
        return None
    session.delete(pending)
    session.flush()
    if pending.provider != provider:
        logger.warning(f"[OAUTH] State issued for {pending.provider} used on the {provider} callback")
        return None
    if to_utc(pending.expires_at) <= now:
        logger.warning(f"[OAUTH] Expired {provider} state for athlete {pending.athlete_id}")
        return None
    return pending
