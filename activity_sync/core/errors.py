"""Error taxonomy for activity sync.

Provider errors, credential errors and persistence errors are kept apart so
the job engine and webhook handlers can decide which failures are job-fatal,
which are activity-fatal, and which are swallowed into an acknowledgment.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all activity sync errors."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ConfigurationError(SyncError):
    """Raised when a required secret or setting is missing at startup."""


class AuthError(SyncError):
    """Raised when a credential is invalid, expired or disconnected.

    Not recoverable without the athlete re-authorizing the provider.
    """


class RefreshError(AuthError):
    """Raised when the provider rejects a refresh token."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code


class RateLimitError(SyncError):
    """Raised when the provider throttles requests (HTTP 429)."""

    def __init__(self, message: str, *, provider: str | None = None, retry_after: int | None = None) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class ProviderError(SyncError):
    """Raised on a non-2xx provider response."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int, body: str = "") -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.body = body


class ProviderNetworkError(SyncError):
    """Raised when the provider could not be reached at all.

    Distinct from ProviderError so callers can treat it as retry-eligible.
    """


class PersistenceError(SyncError):
    """Raised when an activity or job write to the datastore fails."""


class NormalizationError(SyncError):
    """Raised when a provider payload lacks an identity field (id or start time).

    Optional fields never raise; they normalize to None or False.
    """
