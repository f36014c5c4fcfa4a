"""Per-identity sliding window rate limiting for the generation endpoint."""

from __future__ import annotations

import time
from typing import Optional

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from .config import Settings

ANONYMOUS_IDENTITY = "anonymous"


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` per identity within the last ``window_seconds``.

    Backed by the ``limits`` moving window strategy on in-process memory
    storage, which expires idle keys on its own. State does not survive a
    restart and is not shared between workers.
    """

    def __init__(self, window_seconds: int = 60, max_requests: int = 5) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._item = RateLimitItemPerSecond(max_requests, window_seconds)
        self._storage = MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlidingWindowRateLimiter":
        return cls(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        )

    @staticmethod
    def normalise_identity(identity: Optional[str]) -> str:
        identity = (identity or "").strip()
        return identity or ANONYMOUS_IDENTITY

    def check_and_record(self, identity: Optional[str]) -> bool:
        """Record a request for ``identity`` and return whether it is admitted.

        Rejected requests are not recorded.
        """
        return self._strategy.hit(self._item, self.normalise_identity(identity))

    def retry_after(self, identity: Optional[str]) -> float:
        """Seconds until ``identity`` gets a free slot again (0 when it has one)."""
        stats = self._strategy.get_window_stats(self._item, self.normalise_identity(identity))
        if stats.remaining > 0:
            return 0.0
        return max(0.0, stats.reset_time - time.time())

    def reset(self) -> None:
        self._storage.reset()
