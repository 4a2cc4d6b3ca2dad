"""
CircuitBreaker - Prevents cascading failures by stopping requests to failing services.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are blocked
- HALF_OPEN: One trial request is let through to test recovery

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: Lazily, on the first look after reset_timeout expires
- HALF_OPEN → CLOSED: Trial request succeeds
- HALF_OPEN → OPEN: Trial request fails (reset_timeout starts over)
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from vendorlink.services.errors import CircuitOpenError, RequestCancelledError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


StateChangeHook = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 3  # Failures before opening
    reset_timeout: timedelta = timedelta(seconds=30)  # Time before half-open


@dataclass
class StateTransition:
    """One entry of a breaker's state history."""

    timestamp: datetime
    state: CircuitState
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "state": self.state.value,
            "reason": self.reason,
        }


class CircuitBreaker:
    """
    Circuit breaker implementation for a single service.

    Usage:
        cb = CircuitBreaker("perplexity")

        is_trial = cb.acquire()  # raises CircuitOpenError when blocked
        try:
            result = await make_request()
            cb.record_success()
            return result
        except Exception:
            cb.record_failure()
            raise
    """

    HISTORY_LIMIT = 100

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeHook | None = None,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._epoch = 0
        self._history: list[StateTransition] = [
            StateTransition(datetime.now(), CircuitState.CLOSED, "Initialized")
        ]

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN:
            # Check if we should transition to half-open
            if (
                self._opened_at is not None
                and self._clock()
                >= self._opened_at + self.config.reset_timeout.total_seconds()
            ):
                self._transition(CircuitState.HALF_OPEN, "Reset timeout elapsed")
                logger.info(
                    f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN"
                )
        return self._state

    @property
    def recorded_state(self) -> CircuitState:
        """State as last recorded; never performs the lazy OPEN → HALF_OPEN move."""
        return self._state

    @property
    def epoch(self) -> int:
        """Incremented on every state transition."""
        return self._epoch

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def can_request(self) -> bool:
        """Check if a request would be admitted, without admitting it."""
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return True

        if current_state == CircuitState.OPEN:
            return False

        # HALF_OPEN: Only while no trial is running
        return not self._trial_in_flight

    def acquire(self) -> bool:
        """
        Admit a request or raise CircuitOpenError.

        Returns:
            True when the admitted request is the half-open trial
        """
        current_state = self.state

        if current_state == CircuitState.CLOSED:
            return False

        if current_state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        raise CircuitOpenError(self.service_id, self.get_time_until_reset() or 0)

    def release_trial(self) -> None:
        """Give back the trial slot without recording an outcome."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == CircuitState.HALF_OPEN:
            self._close()
        elif self._state == CircuitState.CLOSED:
            # Reset failure count on success
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = datetime.now()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open("Failed in half-open state")
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.config.failure_threshold:
                self._open("Failure threshold reached")

    def force_state(self, state: CircuitState, reason: str = "Manually forced") -> None:
        """Move to ``state`` regardless of counters, resetting them."""
        self._failure_count = 0
        self._opened_at = self._clock() if state == CircuitState.OPEN else None
        self._transition(state, reason)

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._last_failure_time = None
        self.force_state(CircuitState.CLOSED, "Manually reset")
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def _open(self, reason: str) -> None:
        """Transition to OPEN state."""
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN, reason)
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} failures"
        )

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._failure_count = 0
        self._opened_at = None
        self._transition(CircuitState.CLOSED, "Trial request succeeded")
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._epoch += 1
        self._trial_in_flight = False

        self._history.append(StateTransition(datetime.now(), new_state, reason))
        if len(self._history) > self.HISTORY_LIMIT:
            self._history = self._history[-self.HISTORY_LIMIT :]

        if self._on_state_change is not None:
            try:
                self._on_state_change(self.service_id, old_state, new_state)
            except Exception as e:
                logger.error(
                    f"State change hook failed for '{self.service_id}': {e}"
                )

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None

        reset_at = self._opened_at + self.config.reset_timeout.total_seconds()
        return max(0.0, reset_at - self._clock())

    def get_history(self) -> list[StateTransition]:
        return list(self._history)

    def get_status(self) -> dict[str, Any]:
        """
        Get current status as dictionary.

        Read-only: an OPEN circuit past its reset timeout is reported as OPEN
        with time_until_reset 0 until the next call moves it to HALF_OPEN.
        """
        return {
            "service_id": self.service_id,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "trial_in_flight": self._trial_in_flight,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "time_until_reset": self.get_time_until_reset(),
            "history": [t.to_dict() for t in self._history[-10:]],
        }


class CircuitBreakerRegistry:
    """
    Registry for managing one circuit breaker per service key.

    Usage:
        registry = CircuitBreakerRegistry()
        result = await registry.execute("perplexity", lambda: call_vendor())
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeHook | None = None,
    ):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self._default_config,
                clock=self._clock,
                on_state_change=self._on_state_change,
            )
        return self._breakers[service_id]

    async def execute(
        self,
        service_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``operation`` under the breaker for ``service_id``.

        Raises CircuitOpenError without invoking the operation when the circuit
        is open (or a half-open trial is already running). Errors raised by the
        operation itself are re-raised unchanged. Outcomes of calls admitted
        before a state change are not recorded, and a cancelled call records
        nothing.
        """
        breaker = self.get(service_id)
        is_trial = breaker.acquire()
        epoch = breaker.epoch

        try:
            result = await operation()
        except (RequestCancelledError, asyncio.CancelledError):
            if is_trial and breaker.epoch == epoch:
                breaker.release_trial()
            raise
        except Exception:
            if breaker.epoch == epoch:
                breaker.record_failure()
            raise

        if breaker.epoch == epoch:
            breaker.record_success()
        return result

    def record_success(self, service_id: str) -> None:
        self.get(service_id).record_success()

    def record_failure(self, service_id: str) -> None:
        self.get(service_id).record_failure()

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits (recorded state, no transitions)."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.recorded_state == CircuitState.OPEN
        ]
