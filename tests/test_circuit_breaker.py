"""
Tests for CircuitBreaker and CircuitBreakerRegistry.

Covers:
- CLOSED → OPEN after consecutive failures
- Lazy OPEN → HALF_OPEN after reset_timeout
- Single half-open trial and its outcomes
- State change hooks, history, manual control
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import VirtualClock
from vendorlink.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from vendorlink.services.errors import CircuitOpenError, RequestCancelledError


class VendorDown(Exception):
    pass


async def succeed():
    return "ok"


async def fail():
    raise VendorDown("boom")


class TestCircuitBreaker:
    """State machine of a single breaker."""

    def setup_method(self):
        self.clock = VirtualClock()
        self.transitions = []
        self.cb = CircuitBreaker(
            "svc",
            CircuitBreakerConfig(failure_threshold=3, reset_timeout=timedelta(seconds=30)),
            clock=self.clock,
            on_state_change=lambda key, old, new: self.transitions.append((key, old, new)),
        )

    def test_initial_state_is_closed(self):
        assert self.cb.state == CircuitState.CLOSED
        assert self.cb.failure_count == 0
        assert self.cb.can_request()

    def test_opens_after_threshold(self):
        for _ in range(2):
            self.cb.record_failure()
        assert self.cb.state == CircuitState.CLOSED

        self.cb.record_failure()
        assert self.cb.state == CircuitState.OPEN
        assert not self.cb.can_request()
        assert self.cb.get_time_until_reset() == 30.0

    def test_success_resets_consecutive_failures(self):
        self.cb.record_failure()
        self.cb.record_failure()
        self.cb.record_success()
        self.cb.record_failure()

        assert self.cb.state == CircuitState.CLOSED
        assert self.cb.failure_count == 1

    def test_open_rejects_until_timeout(self):
        self._trip()
        self.clock.tick(29.9)

        with pytest.raises(CircuitOpenError) as exc_info:
            self.cb.acquire()
        assert exc_info.value.service_id == "svc"
        assert exc_info.value.reset_after_seconds == pytest.approx(0.1)

    def test_half_open_is_lazy(self):
        self._trip()
        self.clock.tick(30)

        # Nothing changes until someone looks
        assert self.cb._state == CircuitState.OPEN
        assert self.cb.state == CircuitState.HALF_OPEN

    def test_half_open_admits_single_trial(self):
        self._trip()
        self.clock.tick(30)

        assert self.cb.acquire() is True
        with pytest.raises(CircuitOpenError):
            self.cb.acquire()
        assert not self.cb.can_request()

    def test_trial_success_closes(self):
        self._trip()
        self.clock.tick(30)
        self.cb.acquire()

        self.cb.record_success()

        assert self.cb.state == CircuitState.CLOSED
        assert self.cb.failure_count == 0
        assert self.cb.acquire() is False

    def test_trial_failure_reopens_and_restarts_timeout(self):
        self._trip()
        self.clock.tick(30)
        self.cb.acquire()

        self.clock.tick(5)
        self.cb.record_failure()

        assert self.cb.state == CircuitState.OPEN
        assert self.cb.get_time_until_reset() == 30.0

    def test_hook_fires_once_per_transition(self):
        self._trip()
        # Rejected calls while OPEN are not transitions
        for _ in range(5):
            assert not self.cb.can_request()
        self.clock.tick(30)
        self.cb.acquire()
        self.cb.record_success()

        assert self.transitions == [
            ("svc", CircuitState.CLOSED, CircuitState.OPEN),
            ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("svc", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_failing_hook_does_not_break_transition(self):
        cb = CircuitBreaker(
            "svc",
            CircuitBreakerConfig(failure_threshold=1),
            clock=self.clock,
            on_state_change=lambda *args: 1 / 0,
        )
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_force_state_and_reset(self):
        self.cb.force_state(CircuitState.OPEN, "maintenance")
        assert self.cb.state == CircuitState.OPEN
        assert self.cb.get_time_until_reset() == 30.0

        self.cb.reset()
        assert self.cb.state == CircuitState.CLOSED
        assert [t.reason for t in self.cb.get_history()] == [
            "Initialized",
            "maintenance",
            "Manually reset",
        ]

    def test_status_snapshot(self):
        self._trip()
        status = self.cb.get_status()

        assert status["service_id"] == "svc"
        assert status["state"] == "OPEN"
        assert status["failure_count"] == 3
        assert status["last_failure"] is not None
        assert status["history"][-1]["reason"] == "Failure threshold reached"

    def test_status_readers_do_not_transition(self):
        self._trip()
        self.clock.tick(30)

        status = self.cb.get_status()
        assert status["state"] == "OPEN"
        assert status["time_until_reset"] == 0.0
        assert self.cb.recorded_state == CircuitState.OPEN
        assert self.transitions == [("svc", CircuitState.CLOSED, CircuitState.OPEN)]

        # The next admission attempt performs the move
        assert self.cb.acquire() is True
        assert self.transitions[-1] == ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _trip(self):
        for _ in range(3):
            self.cb.record_failure()


class TestCircuitBreakerRegistry:
    """execute() semantics across service keys."""

    def setup_method(self):
        self.clock = VirtualClock()
        self.registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=3, reset_timeout=timedelta(seconds=30)),
            clock=self.clock,
        )

    @pytest.mark.asyncio
    async def test_execute_passes_result_through(self):
        assert await self.registry.execute("svc", succeed) == "ok"

    @pytest.mark.asyncio
    async def test_operation_error_is_reraised_unchanged(self):
        with pytest.raises(VendorDown):
            await self.registry.execute("svc", fail)
        assert self.registry.get("svc").failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_operation(self):
        for _ in range(3):
            with pytest.raises(VendorDown):
                await self.registry.execute("svc", fail)

        invoked = []

        async def operation():
            invoked.append(True)
            return "ok"

        with pytest.raises(CircuitOpenError):
            await self.registry.execute("svc", operation)
        assert invoked == []
        assert self.registry.get_open_circuits() == ["svc"]

    @pytest.mark.asyncio
    async def test_service_keys_fail_independently(self):
        for _ in range(3):
            with pytest.raises(VendorDown):
                await self.registry.execute("perplexity", fail)

        assert await self.registry.execute("anthropic", succeed) == "ok"

    @pytest.mark.asyncio
    async def test_concurrent_callers_rejected_during_trial(self):
        for _ in range(3):
            self.registry.record_failure("svc")
        self.clock.tick(30)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(self.registry.execute("svc", slow_trial))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await self.registry.execute("svc", succeed)

        release.set()
        assert await trial == "recovered"
        assert self.registry.get("svc").state == CircuitState.CLOSED
        assert await self.registry.execute("svc", succeed) == "ok"

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self):
        for _ in range(3):
            self.registry.record_failure("svc")
        self.clock.tick(30)

        with pytest.raises(VendorDown):
            await self.registry.execute("svc", fail)

        breaker = self.registry.get("svc")
        assert breaker.state == CircuitState.OPEN
        assert breaker.get_time_until_reset() == 30.0

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_slot_without_outcome(self):
        for _ in range(3):
            self.registry.record_failure("svc")
        self.clock.tick(30)

        async def cancelled():
            raise RequestCancelledError("caller gave up", service_id="svc")

        with pytest.raises(RequestCancelledError):
            await self.registry.execute("svc", cancelled)

        breaker = self.registry.get("svc")
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.can_request()

    @pytest.mark.asyncio
    async def test_outcome_of_call_admitted_before_state_change_is_ignored(self):
        release = asyncio.Event()

        async def slow_failure():
            await release.wait()
            raise VendorDown("late")

        straggler = asyncio.create_task(self.registry.execute("svc", slow_failure))
        await asyncio.sleep(0)

        for _ in range(3):
            with pytest.raises(VendorDown):
                await self.registry.execute("svc", fail)
        self.clock.tick(30)
        assert self.registry.get("svc").state == CircuitState.HALF_OPEN

        release.set()
        with pytest.raises(VendorDown):
            await straggler

        # The straggler's failure does not decide the half-open trial
        assert self.registry.get("svc").state == CircuitState.HALF_OPEN

    def test_open_circuits_report_is_read_only(self):
        for _ in range(3):
            self.registry.record_failure("svc")
        self.clock.tick(60)

        assert self.registry.get_open_circuits() == ["svc"]
        assert self.registry.get_all_status()["svc"]["state"] == "OPEN"
        assert self.registry.get("svc").recorded_state == CircuitState.OPEN

    def test_reset_helpers(self):
        for _ in range(3):
            self.registry.record_failure("svc")

        assert self.registry.reset("svc") is True
        assert self.registry.reset("unknown") is False
        assert self.registry.get("svc").state == CircuitState.CLOSED

        self.registry.record_failure("a")
        self.registry.reset_all()
        assert self.registry.get_all_status()["a"]["failure_count"] == 0
