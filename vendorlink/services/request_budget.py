"""
RequestBudget - proactive per-service request limits.

Where RateLimitRegistry reacts to 429 responses, a budget holds calls back
before the vendor ever complains: each service may allow at most N requests
per minute, hour and/or day, counted over sliding windows.

Usage:
    budgets = RequestBudgetRegistry(
        {"perplexity": RequestBudgetConfig(per_minute=20, per_day=1000)}
    )
    budget = budgets.get("perplexity")
    while (wait := budget.wait_time()) > 0:
        await asyncio.sleep(wait)
    budget.consume()
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass(frozen=True)
class RequestBudgetConfig:
    """Request limits for one service; None means unlimited."""

    per_minute: int | None = None
    per_hour: int | None = None
    per_day: int | None = None

    def windows(self) -> list[tuple[str, float, int]]:
        """(label, window seconds, limit) for every configured limit."""
        limits = [
            ("minute", MINUTE, self.per_minute),
            ("hour", HOUR, self.per_hour),
            ("day", DAY, self.per_day),
        ]
        return [(label, span, limit) for label, span, limit in limits if limit]

    @property
    def enabled(self) -> bool:
        return bool(self.windows())


class RequestBudget:
    """Sliding-window request counter for a single service."""

    def __init__(
        self,
        service_id: str,
        config: RequestBudgetConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_id = service_id
        self.config = config
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._longest = max((span for _, span, _ in config.windows()), default=0.0)

        # Stats
        self.wait_count = 0
        self.wait_seconds = 0.0

    def _prune(self, now: float) -> None:
        while self._timestamps and self._timestamps[0] <= now - self._longest:
            self._timestamps.popleft()

    def _in_window(self, now: float, span: float) -> list[float]:
        return [ts for ts in self._timestamps if ts > now - span]

    def wait_time(self) -> float:
        """Seconds until one more request fits every window (0 if it fits now)."""
        now = self._clock()
        self._prune(now)

        wait = 0.0
        for _, span, limit in self.config.windows():
            recent = self._in_window(now, span)
            if len(recent) >= limit:
                # The request that must age out before there is room again
                oldest = recent[len(recent) - limit]
                wait = max(wait, oldest + span - now)
        return wait

    def consume(self) -> None:
        """Count a request sent now. Call only after wait_time() returned 0."""
        self._timestamps.append(self._clock())

    def record_wait(self, seconds: float) -> None:
        self.wait_count += 1
        self.wait_seconds += seconds
        logger.warning(
            f"Request budget for '{self.service_id}' exhausted, "
            f"holding request for {seconds:.2f}s"
        )

    def get_stats(self) -> dict[str, Any]:
        """Recent request counts and usage of each configured limit."""
        now = self._clock()
        self._prune(now)

        stats: dict[str, Any] = {
            "requests_last_minute": len(self._in_window(now, MINUTE)),
            "requests_last_hour": len(self._in_window(now, HOUR)),
            "requests_last_day": len(self._in_window(now, DAY)),
            "wait_count": self.wait_count,
            "wait_seconds": round(self.wait_seconds, 3),
        }
        for label, span, limit in self.config.windows():
            stats[f"{label}_usage_percent"] = (
                len(self._in_window(now, span)) * 100 / limit
            )
        return stats


class RequestBudgetRegistry:
    """
    One RequestBudget per service key.

    Services without a configured budget (and no default) are unlimited and
    get() returns None for them.
    """

    def __init__(
        self,
        budgets: dict[str, RequestBudgetConfig] | None = None,
        default_config: RequestBudgetConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._configs = dict(budgets or {})
        self._default_config = default_config
        self._clock = clock
        self._budgets: dict[str, RequestBudget] = {}

    def configure(self, service_id: str, config: RequestBudgetConfig) -> None:
        """Set or replace the limits for a service. Its request history restarts."""
        self._configs[service_id] = config
        self._budgets.pop(service_id, None)
        logger.info(f"Updated request budget for '{service_id}': {config}")

    def get(self, service_id: str) -> RequestBudget | None:
        """Get or create the budget for a service, or None if it is unlimited."""
        budget = self._budgets.get(service_id)
        if budget is not None:
            return budget

        config = self._configs.get(service_id, self._default_config)
        if config is None or not config.enabled:
            return None

        budget = RequestBudget(service_id, config, clock=self._clock)
        self._budgets[service_id] = budget
        return budget

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {
            service_id: budget.get_stats()
            for service_id, budget in self._budgets.items()
        }
