from __future__ import annotations

from activity_sync.integrations.base import ProviderClient
from activity_sync.integrations.garmin.client import GarminClient
from activity_sync.integrations.strava.client import StravaClient

_CLIENTS: dict[str, type[ProviderClient]] = {
    "strava": StravaClient,
    "garmin": GarminClient,
}

SUPPORTED_PROVIDERS = tuple(_CLIENTS)


def get_provider_client(provider: str, **kwargs) -> ProviderClient:
    """Create a client for a provider.

    Args:
        provider: Provider name ("strava" or "garmin")
        **kwargs: Forwarded to the client (page_delay_seconds, max_pages, timeout)

    Raises:
        ValueError: Unknown provider
    """
    try:
        client_cls = _CLIENTS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None
    return client_cls(**kwargs)
