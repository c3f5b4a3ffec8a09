import asyncio

import pytest

from tutor_gateway.rate_limit import RateRule, SlidingWindowRateLimiter, per_minute


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(limit: int, window: float = 60.0, clock: FakeClock = None) -> SlidingWindowRateLimiter:
    clock = clock or FakeClock()
    return SlidingWindowRateLimiter(RateRule("test", limit, window), clock=clock, sleep=clock.sleep)


def test_grants_up_to_limit_without_waiting():
    clock = FakeClock()
    limiter = _limiter(3, clock=clock)

    async def run():
        return [await limiter.acquire() for _ in range(3)]

    assert asyncio.run(run()) == [0.0, 0.0, 0.0]
    assert clock.sleeps == []
    assert limiter.in_window() == 3


def test_waits_until_oldest_grant_leaves_the_window():
    clock = FakeClock()
    limiter = _limiter(2, window=60.0, clock=clock)

    async def run():
        await limiter.acquire()
        clock.now += 10
        await limiter.acquire()
        return await limiter.acquire()

    waited = asyncio.run(run())

    # First grant at t=1000 ages out at t=1060; the third call arrives at t=1010.
    assert waited == pytest.approx(50.0)
    assert clock.sleeps == [pytest.approx(50.0)]


def test_grants_expire_after_window():
    clock = FakeClock()
    limiter = _limiter(1, window=5.0, clock=clock)

    async def run():
        await limiter.acquire()
        clock.now += 5.0
        return await limiter.acquire()

    assert asyncio.run(run()) == 0.0
    assert clock.sleeps == []


def test_never_more_than_limit_in_any_window():
    clock = FakeClock()
    limiter = _limiter(3, window=1.0, clock=clock)
    granted_at = []

    async def run():
        for _ in range(10):
            await limiter.acquire()
            granted_at.append(clock.now)

    asyncio.run(run())

    for t in granted_at:
        in_window = [g for g in granted_at if t - 1.0 < g <= t]
        assert len(in_window) <= 3


def test_reset_clears_window():
    limiter = _limiter(1)
    asyncio.run(limiter.acquire())
    limiter.reset()
    assert limiter.in_window() == 0


def test_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(RateRule("bad", 0, 60.0))


def test_per_minute_helper():
    limiter = per_minute("agent:x", 15)
    assert limiter.rule.limit == 15
    assert limiter.rule.window_seconds == 60.0


class SharedClock(FakeClock):
    """Clock for concurrent waiters: sleepers yield and wake at their own deadline."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        deadline = self.now + seconds
        await asyncio.sleep(0)
        self.now = max(self.now, deadline)


def test_concurrent_callers_respect_the_window():
    clock = SharedClock()
    limiter = _limiter(3, window=60.0, clock=clock)

    async def caller():
        await limiter.acquire()
        return clock.now

    async def run():
        return await asyncio.gather(*(caller() for _ in range(4)))

    granted = sorted(asyncio.run(run()))

    assert granted[:3] == [1000.0, 1000.0, 1000.0]
    assert granted[3] - granted[0] >= 60.0


def test_many_concurrent_callers_never_exceed_limit():
    clock = SharedClock()
    limiter = _limiter(3, window=10.0, clock=clock)

    async def caller():
        await limiter.acquire()
        return clock.now

    async def run():
        return await asyncio.gather(*(caller() for _ in range(10)))

    granted = sorted(asyncio.run(run()))

    assert len(granted) == 10
    for i in range(len(granted) - 3):
        assert granted[i + 3] - granted[i] >= 10.0
