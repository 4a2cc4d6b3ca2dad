"""
InFlightTracker - bookkeeping for every request the executor dispatches.

Entries are added when a call starts and removed when it settles. Calls whose
settlement is never observed (the caller dropped the task) are cleaned up by
StaleResourceReaper.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from loguru import logger


@dataclass
class TrackedEntry:
    """A dispatched request that has not settled yet."""

    handle: asyncio.Task[Any] | None
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def age(self, now: float) -> float:
        return now - self.timestamp


class InFlightTracker:
    """
    Tracks in-flight requests by entry id.

    Usage:
        tracker = InFlightTracker()
        entry_id = tracker.track(asyncio.current_task(), url="/v1/chat")
        try:
            ...
        finally:
            tracker.untrack(entry_id)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, debug: bool = False):
        self._entries: dict[str, TrackedEntry] = {}
        self._ids = itertools.count(1)
        self._clock = clock
        self._debug = debug
        self._stats = TrackerStats()

    def track(self, handle: asyncio.Task[Any] | None, **metadata: Any) -> str:
        """Register a dispatched call and return its entry id."""
        entry_id = f"req-{next(self._ids)}"
        self._entries[entry_id] = TrackedEntry(
            handle=handle,
            timestamp=self._clock(),
            metadata=metadata,
        )
        self._stats.tracked += 1
        self._log(f"TRACK: {entry_id} {metadata.get('url', '')}")
        return entry_id

    def update(self, entry_id: str, **metadata: Any) -> None:
        entry = self._entries.get(entry_id)
        if entry is not None:
            entry.metadata.update(metadata)

    def untrack(self, entry_id: str) -> bool:
        """Remove a settled call. Returns False if the reaper got there first."""
        if self._entries.pop(entry_id, None) is None:
            return False
        self._stats.settled += 1
        self._log(f"SETTLED: {entry_id}")
        return True

    def get(self, entry_id: str) -> TrackedEntry | None:
        return self._entries.get(entry_id)

    def remove_stale(self, max_age: timedelta) -> int:
        """Drop entries older than ``max_age``; the underlying tasks are left alone."""
        now = self._clock()
        limit = max_age.total_seconds()
        stale = [
            entry_id
            for entry_id, entry in self._entries.items()
            if entry.age(now) > limit
        ]
        for entry_id in stale:
            del self._entries[entry_id]
        self._stats.reaped += len(stale)
        return len(stale)

    def entries(self) -> dict[str, TrackedEntry]:
        return dict(self._entries)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def get_stats(self) -> "TrackerStats":
        self._stats.in_flight = len(self._entries)
        return self._stats

    def __len__(self) -> int:
        return len(self._entries)

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[InFlightTracker] {message}")


class TrackerStats:
    """Statistics for in-flight tracking."""

    def __init__(self):
        self.tracked: int = 0  # Calls registered
        self.settled: int = 0  # Calls removed on settlement
        self.reaped: int = 0  # Calls removed by the reaper
        self.in_flight: int = 0  # Current entries

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tracked": self.tracked,
            "settled": self.settled,
            "reaped": self.reaped,
            "in_flight": self.in_flight,
        }
