"""
RequestExecutor - Retrying async request layer for vendor API calls.

Combines:
- RateLimitRegistry for per-endpoint 429 windows
- RequestBudgetRegistry for proactive per-service request limits
- CircuitBreakerRegistry for per-service failure isolation
- InFlightTracker and StaleResourceReaper for bounded in-flight bookkeeping

The whole retry loop of a call runs inside the circuit breaker for its
service id, so the breaker sees exactly one outcome per top-level call.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from vendorlink.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from vendorlink.services.errors import (
    ErrorKind,
    RateLimitError,
    RateLimitExceededError,
    RequestCancelledError,
    RetriesExhaustedError,
    ServiceError,
    classify_exception,
    classify_response,
)
from vendorlink.services.rate_limits import RateLimitRegistry
from vendorlink.services.reaper import StaleResourceReaper
from vendorlink.services.request_budget import (
    RequestBudgetConfig,
    RequestBudgetRegistry,
)
from vendorlink.services.tracker import InFlightTracker
from vendorlink.services.transport import HttpxTransport, RequestDescriptor, Transport

if TYPE_CHECKING:
    from vendorlink.settings import Settings

T = TypeVar("T")

DEFAULT_RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class RetryConfig:
    """Retry policy defaults for an executor (durations in seconds)."""

    max_retries: int = 3
    timeout: float = 30.0
    retry_status_codes: frozenset[int] = DEFAULT_RETRY_STATUS_CODES
    retry_delay: float = 1.0  # Base for exponential backoff
    max_retry_delay: float = 60.0  # Cap for computed backoff
    jitter: float = 0.2  # Backoff is scaled by 1 ± jitter


@dataclass
class RequestOptions:
    """Per-call overrides and cancellation controls."""

    max_retries: int | None = None
    timeout: float | None = None
    retry_delay: float | None = None
    deadline: float | None = None  # Seconds budget for the whole call
    cancel_event: asyncio.Event | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RequestAttempt:
    request: RequestDescriptor
    endpoint: str
    service_id: str
    max_retries: int
    timeout: float
    retry_delay: float
    started_at: float
    deadline_at: float | None = None
    cancel_event: asyncio.Event | None = None
    entry_id: str = ""
    retries: int = 0
    dispatched: int = 0


class RequestExecutor:
    """
    Async request executor with retries, rate-limit windows and circuit breaking.

    Usage:
        async with RequestExecutor(name="perplexity", base_url=PERPLEXITY_URL) as executor:
            response = await executor.request(
                RequestDescriptor(url="/chat/completions", method="POST", json=body),
                RequestOptions(max_retries=2, timeout=60.0),
            )
            data = response.json()
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        name: str = "vendorlink",
        base_url: str | None = None,
        config: RetryConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        budget_config: RequestBudgetConfig | None = None,
        circuit_breakers: CircuitBreakerRegistry | None = None,
        rate_limits: RateLimitRegistry | None = None,
        request_budgets: RequestBudgetRegistry | None = None,
        tracker: InFlightTracker | None = None,
        reaper_interval: timedelta = timedelta(minutes=5),
        stale_after: timedelta = timedelta(minutes=30),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        debug: bool = False,
    ):
        self.name = name
        self.config = config or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        # Initialize components (injected ones are used as given, even when empty)
        self._owns_transport = transport is None
        self._transport: Transport = (
            transport
            if transport is not None
            else HttpxTransport(base_url=base_url, default_timeout=self.config.timeout)
        )
        self._circuit_breakers = (
            circuit_breakers
            if circuit_breakers is not None
            else CircuitBreakerRegistry(breaker_config, clock=clock)
        )
        self._rate_limits = (
            rate_limits if rate_limits is not None else RateLimitRegistry(clock=clock)
        )
        self._request_budgets = (
            request_budgets
            if request_budgets is not None
            else RequestBudgetRegistry(default_config=budget_config, clock=clock)
        )
        self._tracker = (
            tracker
            if tracker is not None
            else InFlightTracker(clock=clock, debug=debug)
        )
        self._reaper = StaleResourceReaper(
            self._tracker, interval=reaper_interval, stale_after=stale_after
        )
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        transport: Transport | None = None,
        **kwargs: Any,
    ) -> "RequestExecutor":
        """Build an executor from loaded Settings."""
        return cls(
            transport,
            name=settings.name,
            base_url=settings.base_url,
            config=RetryConfig(
                max_retries=settings.max_retries,
                timeout=settings.timeout,
                retry_status_codes=settings.retry_status_codes,
                retry_delay=settings.retry_delay,
                max_retry_delay=settings.max_retry_delay,
                jitter=settings.jitter,
            ),
            breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.failure_threshold,
                reset_timeout=timedelta(seconds=settings.reset_timeout),
            ),
            budget_config=RequestBudgetConfig(
                per_minute=settings.requests_per_minute,
                per_hour=settings.requests_per_hour,
                per_day=settings.requests_per_day,
            ),
            reaper_interval=timedelta(seconds=settings.reaper_interval),
            stale_after=timedelta(seconds=settings.stale_after),
            **kwargs,
        )

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        return self._circuit_breakers

    @property
    def rate_limits(self) -> RateLimitRegistry:
        return self._rate_limits

    @property
    def request_budgets(self) -> RequestBudgetRegistry:
        return self._request_budgets

    @property
    def tracker(self) -> InFlightTracker:
        return self._tracker

    @property
    def reaper(self) -> StaleResourceReaper:
        return self._reaper

    def start(self) -> None:
        """Start the background reaper. Called implicitly on first use."""
        if self._closed:
            raise RuntimeError(f"RequestExecutor '{self.name}' is closed")
        if not self._reaper.is_running():
            self._reaper.start()

    async def request(
        self,
        request: RequestDescriptor,
        options: RequestOptions | None = None,
        *,
        service_id: str | None = None,
    ) -> httpx.Response:
        """
        Send a request with retries, rate-limit waits and circuit breaking.

        Args:
            request: What to send
            options: Per-call overrides (max_retries, timeout, retry_delay),
                deadline, cancel_event and extra tracking metadata
            service_id: Circuit breaker key (default: the executor name)

        Returns:
            The successful httpx.Response

        Raises:
            CircuitOpenError: If the circuit for service_id is open
            ClientError: For non-retryable 4xx responses
            RateLimitExceededError: If the endpoint kept answering 429
            RetriesExhaustedError: If retryable failures used up the budget
            RequestCancelledError: If cancelled or past the deadline
        """
        self.start()
        attempt = self._new_attempt(
            request, options or RequestOptions(), service_id or self.name
        )
        metadata: dict[str, Any] = {
            "method": request.method,
            "url": request.url,
            "endpoint": attempt.endpoint,
            "service_id": attempt.service_id,
            "attempts": 0,
        }
        if options:
            metadata.update(options.metadata)
        attempt.entry_id = self._tracker.track(asyncio.current_task(), **metadata)

        try:
            return await self._circuit_breakers.execute(
                attempt.service_id, lambda: self._execute_with_retries(attempt)
            )
        finally:
            self._tracker.untrack(attempt.entry_id)

    def _new_attempt(
        self,
        request: RequestDescriptor,
        options: RequestOptions,
        service_id: str,
    ) -> _RequestAttempt:
        now = self._clock()
        return _RequestAttempt(
            request=request,
            endpoint=request.endpoint_key,
            service_id=service_id,
            max_retries=(
                options.max_retries
                if options.max_retries is not None
                else self.config.max_retries
            ),
            timeout=(
                options.timeout if options.timeout is not None else self.config.timeout
            ),
            retry_delay=(
                options.retry_delay
                if options.retry_delay is not None
                else self.config.retry_delay
            ),
            started_at=now,
            deadline_at=now + options.deadline if options.deadline is not None else None,
            cancel_event=options.cancel_event,
        )

    async def _execute_with_retries(self, attempt: _RequestAttempt) -> httpx.Response:
        await self._wait_for_rate_limit(attempt)

        while True:
            self._check_cancelled(attempt)
            await self._wait_for_request_budget(attempt)
            try:
                return await self._dispatch(attempt)
            except ServiceError as error:
                if error.kind == ErrorKind.RATE_LIMIT:
                    await self._handle_rate_limit(attempt, error)
                    continue

                if not error.retryable:
                    raise

                if attempt.retries >= attempt.max_retries:
                    raise RetriesExhaustedError(
                        error,
                        service_id=attempt.service_id,
                        endpoint=attempt.endpoint,
                        attempts=attempt.dispatched,
                    ) from error

                attempt.retries += 1
                delay = self.calculate_backoff(attempt.retries, attempt.retry_delay)
                logger.warning(
                    f"Request to {attempt.endpoint} failed ({error}), "
                    f"retry {attempt.retries}/{attempt.max_retries} in {delay:.2f}s"
                )
                await self._pause(attempt, delay)

    async def _handle_rate_limit(
        self, attempt: _RequestAttempt, error: RateLimitError
    ) -> None:
        if error.retry_after is not None:
            delay = error.retry_after
        else:
            delay = min(
                self.config.max_retry_delay,
                attempt.retry_delay * 2**attempt.retries,
            )
        self._rate_limits.record(attempt.endpoint, delay, retry_after=error.retry_after)

        if attempt.retries >= attempt.max_retries:
            raise RateLimitExceededError(
                error,
                service_id=attempt.service_id,
                endpoint=attempt.endpoint,
                attempts=attempt.dispatched,
            ) from error

        attempt.retries += 1
        await self._pause(attempt, delay)
        await self._wait_for_rate_limit(attempt)

    async def _wait_for_rate_limit(self, attempt: _RequestAttempt) -> None:
        """Wait out the endpoint's window, re-reading the registry after each wait."""
        window = self._rate_limits.get(attempt.endpoint)
        while window is not None:
            wait = window.remaining(self._clock())
            logger.info(f"Endpoint {attempt.endpoint} is rate limited, waiting {wait:.2f}s")
            await self._pause(attempt, wait)

            if not window.is_active(self._clock()):
                # No-op if a concurrent 429 already replaced it
                self._rate_limits.release(attempt.endpoint, window)
            # Same window after an early wakeup, or a fresher one to respect
            window = self._rate_limits.get(attempt.endpoint)

    async def _wait_for_request_budget(self, attempt: _RequestAttempt) -> None:
        """Hold the attempt until the service's request budget has room, then spend it."""
        budget = self._request_budgets.get(attempt.service_id)
        if budget is None:
            return

        while (wait := budget.wait_time()) > 0:
            budget.record_wait(wait)
            await self._pause(attempt, wait)
        # No suspension between the last check and consume()
        budget.consume()

    async def _dispatch(self, attempt: _RequestAttempt) -> httpx.Response:
        """One transport call. Raises a classified ServiceError on failure."""
        attempt.dispatched += 1
        self._tracker.update(attempt.entry_id, attempts=attempt.dispatched)
        timeout = self._attempt_timeout(attempt)

        logger.debug(
            f"{attempt.request.method} {attempt.request.url} "
            f"(attempt {attempt.dispatched}, timeout {timeout:.2f}s)"
        )

        try:
            response = await self._interruptible(
                attempt,
                asyncio.wait_for(self._transport(attempt.request, timeout), timeout),
            )
        except Exception as exc:
            error = classify_exception(
                exc,
                self.config.retry_status_codes,
                service_id=attempt.service_id,
                endpoint=attempt.endpoint,
                attempts=attempt.dispatched,
                timeout=timeout,
            )
            if error is None or error is exc:
                raise
            raise error from exc

        if response.is_error:
            raise classify_response(
                response,
                self.config.retry_status_codes,
                service_id=attempt.service_id,
                endpoint=attempt.endpoint,
                attempts=attempt.dispatched,
            )
        return response

    def _attempt_timeout(self, attempt: _RequestAttempt) -> float:
        if attempt.deadline_at is None:
            return attempt.timeout
        return max(0.0, min(attempt.timeout, attempt.deadline_at - self._clock()))

    async def _pause(self, attempt: _RequestAttempt, delay: float) -> None:
        """Sleep between attempts unless that would cross the deadline."""
        if attempt.deadline_at is not None and self._clock() + delay > attempt.deadline_at:
            raise self._cancelled(
                attempt, f"deadline leaves no room for a {delay:.2f}s wait"
            )
        self._check_cancelled(attempt)
        await self._interruptible(attempt, self._sleep(delay))

    async def _interruptible(
        self, attempt: _RequestAttempt, awaitable: Awaitable[T]
    ) -> T:
        """Await ``awaitable``, abandoning it if the cancel event fires first."""
        if attempt.cancel_event is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(attempt.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()

        if work in done:
            return work.result()
        raise self._cancelled(attempt, "cancelled by caller")

    def _check_cancelled(self, attempt: _RequestAttempt) -> None:
        if attempt.cancel_event is not None and attempt.cancel_event.is_set():
            raise self._cancelled(attempt, "cancelled by caller")
        if attempt.deadline_at is not None and self._clock() >= attempt.deadline_at:
            raise self._cancelled(attempt, "deadline exceeded")

    def _cancelled(self, attempt: _RequestAttempt, reason: str) -> RequestCancelledError:
        logger.info(f"Request to {attempt.endpoint} {reason}")
        return RequestCancelledError(
            f"Request to {attempt.endpoint} {reason} after {attempt.dispatched} attempts",
            service_id=attempt.service_id,
            endpoint=attempt.endpoint,
            attempts=attempt.dispatched,
        )

    def calculate_backoff(self, retries: int, base: float | None = None) -> float:
        """
        Backoff before retry number ``retries`` (1-based).

        ``base × 2^(retries-1)`` scaled by ``1 ± jitter`` and capped at
        max_retry_delay.
        """
        base = self.config.retry_delay if base is None else base
        delay = base * 2 ** (max(retries, 1) - 1)
        spread = self.config.jitter * (2 * self._rng.random() - 1)
        return min(self.config.max_retry_delay, max(0.0, delay * (1 + spread)))

    async def close(self) -> None:
        """Stop the reaper, drop tracking state and close an owned transport."""
        self._reaper.stop()
        dropped = self._tracker.clear()
        if dropped:
            logger.debug(f"Dropped {dropped} in-flight entries on close")

        if self._owns_transport and isinstance(self._transport, HttpxTransport):
            await self._transport.aclose()

        self._closed = True
        logger.debug(f"RequestExecutor '{self.name}' closed")

    async def __aenter__(self) -> "RequestExecutor":
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of breakers, rate limits and in-flight calls."""
        return {
            "name": self.name,
            "circuit_breakers": self._circuit_breakers.get_all_status(),
            "open_circuits": self._circuit_breakers.get_open_circuits(),
            "rate_limited_endpoints": self._rate_limits.get_limited_endpoints(),
            "request_budgets": self._request_budgets.get_all_stats(),
            "in_flight": self._tracker.get_stats().to_dict(),
            "reaper_running": self._reaper.is_running(),
        }

    def get_circuit_status(self, service_id: str) -> dict[str, Any] | None:
        """Get circuit breaker status for a specific service."""
        status = self._circuit_breakers.get_all_status()
        return status.get(service_id)

    def reset_circuit(self, service_id: str) -> bool:
        """Reset circuit breaker for a service."""
        return self._circuit_breakers.reset(service_id)
