"""
RateLimitRegistry - per-endpoint rate-limit windows learned from 429 responses.

A window says "this endpoint rejects requests until reset_at". The newest
write always wins, since a fresher 429 is more authoritative than an older
one. Waiters must re-read the registry when they wake and only remove the
window they actually waited on (see release), because a concurrent failure
may have replaced it with a longer one in the meantime.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger


@dataclass(frozen=True, eq=False)
class RateLimitWindow:
    """A single rate-limit window. Identity distinguishes separate writes."""

    reset_at: float
    retry_count: int = 1
    retry_after: float | None = None
    status: int = 429

    def remaining(self, now: float) -> float:
        """Seconds left until the window resets."""
        return max(0.0, self.reset_at - now)

    def is_active(self, now: float) -> bool:
        return self.reset_at > now


class RateLimitRegistry:
    """
    Map of endpoint key to active RateLimitWindow.

    Usage:
        registry = RateLimitRegistry()
        registry.record("/v1/chat", delay=2.0, retry_after=2.0)

        window = registry.get("/v1/chat")
        if window:
            await asyncio.sleep(window.remaining(time.monotonic()))
            registry.release("/v1/chat", window)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._windows: dict[str, RateLimitWindow] = {}
        self._clock = clock

    def get(self, endpoint_key: str) -> RateLimitWindow | None:
        """Return the active window for an endpoint, dropping it if expired."""
        window = self._windows.get(endpoint_key)
        if window is None:
            return None
        if not window.is_active(self._clock()):
            del self._windows[endpoint_key]
            return None
        return window

    def set(self, endpoint_key: str, window: RateLimitWindow) -> None:
        """Store a window, replacing whatever was there."""
        self._windows[endpoint_key] = window

    def delete(self, endpoint_key: str) -> bool:
        return self._windows.pop(endpoint_key, None) is not None

    def record(
        self,
        endpoint_key: str,
        delay: float,
        retry_after: float | None = None,
        status: int = 429,
    ) -> RateLimitWindow:
        """Write a fresh window starting now, counting consecutive rate limits."""
        previous = self._windows.get(endpoint_key)
        window = RateLimitWindow(
            reset_at=self._clock() + delay,
            retry_count=(previous.retry_count if previous else 0) + 1,
            retry_after=retry_after,
            status=status,
        )
        self.set(endpoint_key, window)
        logger.warning(
            f"Endpoint {endpoint_key} rate limited for {delay:.2f}s "
            f"(retry count {window.retry_count})"
        )
        return window

    def release(self, endpoint_key: str, window: RateLimitWindow) -> bool:
        """Remove ``window`` only if it is still the current entry."""
        if self._windows.get(endpoint_key) is window:
            del self._windows[endpoint_key]
            return True
        return False

    def is_limited(self, endpoint_key: str) -> bool:
        return self.get(endpoint_key) is not None

    def get_limited_endpoints(self) -> dict[str, dict[str, Any]]:
        """Active windows keyed by endpoint, for health reporting."""
        now = self._clock()
        status = {}
        for endpoint_key in list(self._windows):
            window = self.get(endpoint_key)
            if window is not None:
                status[endpoint_key] = {
                    "reset_in": window.remaining(now),
                    "retry_count": window.retry_count,
                    "retry_after": window.retry_after,
                }
        return status

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)
