"""Wall-clock budget shared by the provider calls of one webhook delivery."""

from __future__ import annotations

import time
from collections.abc import Callable

# Lower bound for a capped request timeout, so a nearly spent budget still
# gets a real attempt instead of an immediate timeout
MIN_REQUEST_TIMEOUT_SECONDS = 0.25


class Deadline:
    """Tracks time left until an absolute monotonic deadline.

    Mandatory calls cap their timeout with cap(); optional follow-up work
    (profile refresh, push notification) is skipped once expired.
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self.budget = seconds
        self._expires_at = self._clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def elapsed(self) -> float:
        return self.budget - (self._expires_at - self._clock())

    def cap(self, timeout: float) -> float:
        """Shrink a request timeout to the time left, never below MIN_REQUEST_TIMEOUT_SECONDS."""
        return max(MIN_REQUEST_TIMEOUT_SECONDS, min(timeout, self.remaining()))
