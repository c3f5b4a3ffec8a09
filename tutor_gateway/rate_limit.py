from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque

logger = logging.getLogger("tutor-gateway")


@dataclass(frozen=True)
class RateRule:
    key: str
    limit: int
    window_seconds: float


class SlidingWindowRateLimiter:
    """
    Admission control over a trailing time window.

    `acquire` never rejects: when the window is full the caller sleeps until
    the oldest grant ages out. The timestamp window is only touched while
    holding the lock; sleeping happens outside it.
    """

    def __init__(
        self,
        rule: RateRule,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rule.limit <= 0:
            raise ValueError("rate limit must be positive")
        self.rule = rule
        self._clock = clock
        self._sleep = sleep
        self._grants: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        horizon = now - self.rule.window_seconds
        while self._grants and self._grants[0] <= horizon:
            self._grants.popleft()

    async def acquire(self) -> float:
        """Wait for a slot; returns the total seconds spent waiting."""
        waited = 0.0
        while True:
            async with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._grants) < self.rule.limit:
                    self._grants.append(now)
                    if waited:
                        logger.info(
                            "rate_limit_granted key=%s waited_s=%.3f",
                            self.rule.key,
                            waited,
                        )
                    return waited
                wait = self._grants[0] + self.rule.window_seconds - now
            logger.info("rate_limit_wait key=%s wait_s=%.3f", self.rule.key, wait)
            await self._sleep(max(wait, 0.0))
            waited += max(wait, 0.0)

    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._grants)

    def reset(self) -> None:
        self._grants.clear()


def per_minute(key: str, requests_per_minute: int, **kwargs) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(RateRule(key=key, limit=requests_per_minute, window_seconds=60.0), **kwargs)
