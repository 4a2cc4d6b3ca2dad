"""Shared fakes for the resilience layer tests."""

import asyncio
import heapq
import itertools
import random
from typing import Any, Callable

import httpx
import pytest

from vendorlink.services.client import RequestExecutor, RetryConfig
from vendorlink.services.transport import RequestDescriptor

BASE = "https://api.vendor.test"


class VirtualClock:
    """
    Time source plus sleep function running on virtual time.

    Sleeps park until ``run`` advances the clock to their wake time, so
    concurrent callers interleave exactly as they would on real time, only
    instantly and deterministically.
    """

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def __call__(self) -> float:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + delay, next(self._seq), future))
        await future

    def _advance(self) -> bool:
        while self._sleepers:
            wake_at, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self.now = max(self.now, wake_at)
            future.set_result(None)
            return True
        return False

    async def run(self, *coros) -> list[Any]:
        """Run coroutines to completion, advancing virtual time when all are parked."""
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        idle_rounds = 0
        while True:
            for _ in range(50):
                await asyncio.sleep(0)
            if all(task.done() for task in tasks):
                break
            if self._advance():
                idle_rounds = 0
                continue
            # Blocked on something outside virtual time (real timeouts)
            idle_rounds += 1
            if idle_rounds > 400:
                raise RuntimeError("tasks blocked outside virtual time")
            await asyncio.sleep(0.005)
        return await asyncio.gather(*tasks, return_exceptions=True)

    async def run_one(self, coro) -> Any:
        (result,) = await self.run(coro)
        if isinstance(result, BaseException):
            raise result
        return result


class PinnedRandom(random.Random):
    """Random source whose random() always returns ``value``."""

    def __init__(self, value: float = 0.5):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class ScriptedTransport:
    """
    Transport replaying queued outcomes; the last outcome repeats.

    An outcome is an httpx.Response, an exception instance, or a callable
    taking the request and returning either.
    """

    def __init__(self, *outcomes: Any, clock: Callable[[], float] | None = None):
        self.outcomes = list(outcomes)
        self.calls: list[RequestDescriptor] = []
        self.call_times: list[float] = []
        self._clock = clock

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def __call__(self, request: RequestDescriptor, timeout: float) -> httpx.Response:
        self.calls.append(request)
        if self._clock is not None:
            self.call_times.append(self._clock())
        await asyncio.sleep(0)

        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if callable(outcome):
            outcome = outcome(request)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_response(
    status: int,
    json: Any = None,
    headers: dict[str, str] | None = None,
    url: str = f"{BASE}/v1/x",
) -> httpx.Response:
    return httpx.Response(
        status,
        json=json,
        headers=headers,
        request=httpx.Request("GET", url),
    )


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def make_executor(clock):
    """Factory for executors wired to the virtual clock and a pinned jitter source."""

    def factory(transport, **kwargs) -> RequestExecutor:
        kwargs.setdefault("config", RetryConfig(retry_delay=0.01))
        kwargs.setdefault("rng", PinnedRandom())
        kwargs.setdefault("sleep", clock.sleep)
        return RequestExecutor(transport, clock=clock, **kwargs)

    return factory
