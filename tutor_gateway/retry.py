from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import AgentError

logger = logging.getLogger("tutor-gateway")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        return min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)

    def wait(self) -> wait_exponential:
        return wait_exponential(multiplier=self.initial_delay, exp_base=self.backoff_factor, max=self.max_delay)


def is_retriable(exc: BaseException) -> bool:
    """Typed agent errors carry their own classification; anything else is retried."""
    if isinstance(exc, AgentError):
        return exc.retriable
    return True


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    should_retry: Callable[[BaseException], bool] = is_retriable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Run `fn` up to `max_retries + 1` times, sleeping between failures.

    The last error is re-raised once attempts are exhausted or as soon as
    `should_retry` rejects an error. Cancellation is never retried.
    """
    policy = policy or RetryPolicy()

    def _log_retry(state: RetryCallState) -> None:
        logger.warning(
            "retry label=%s attempt=%s delay_s=%.2f error=%s",
            label,
            state.attempt_number,
            state.next_action.sleep if state.next_action else 0.0,
            state.outcome.exception() if state.outcome else None,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=policy.wait(),
        retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and should_retry(exc)),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(fn)
