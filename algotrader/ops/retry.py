from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from algotrader.core.errors import FatalExchangeError

log = logging.getLogger("algotrader.retry")

T = TypeVar("T")

_MISSING = object()


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, s) -> "RetryPolicy":
        return cls(
            attempts=max(1, int(s.RETRY_ATTEMPTS)),
            base_delay=float(s.RETRY_BASE_DELAY),
            max_delay=float(s.RETRY_MAX_DELAY),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after failed attempt number `attempt` (0-based)."""
        d = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter > 0:
            d += random.uniform(0, self.jitter)
        return max(0.0, d)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str = "call",
    default: Any = _MISSING,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await fn() up to policy.attempts times with exponential backoff.

    FatalExchangeError, and anything outside `retry_on`, is raised immediately.
    When retries are exhausted the last error is raised, or `default` is
    returned if one was given.
    """
    last_err: BaseException | None = None
    for attempt in range(policy.attempts):
        try:
            return await fn()
        except FatalExchangeError:
            raise
        except retry_on as e:
            last_err = e
            log.warning(
                "%s failed (attempt %d/%d): %s: %s",
                label,
                attempt + 1,
                policy.attempts,
                type(e).__name__,
                e,
            )
            if attempt < policy.attempts - 1:
                await sleep(policy.delay_for(attempt))

    if default is not _MISSING:
        log.error("%s: retries exhausted, using default", label)
        return default
    assert last_err is not None
    raise last_err


def retry_call(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    label: str = "call",
    default: Any = _MISSING,
    sleep: Callable[[float], Any] = time.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Blocking twin of retry_async for synchronous collaborators."""
    last_err: BaseException | None = None
    for attempt in range(policy.attempts):
        try:
            return fn()
        except FatalExchangeError:
            raise
        except retry_on as e:
            last_err = e
            log.warning(
                "%s failed (attempt %d/%d): %s: %s",
                label,
                attempt + 1,
                policy.attempts,
                type(e).__name__,
                e,
            )
            if attempt < policy.attempts - 1:
                sleep(policy.delay_for(attempt))

    if default is not _MISSING:
        log.error("%s: retries exhausted, using default", label)
        return default
    assert last_err is not None
    raise last_err
