"""
Loyalty Ledger - Outbound Throttling

RateLimiter: evenly spaced permits, R per second, no burst.
Cooldown:    one shared deadline; nobody calls the accrual system before it.

Both are shared by every unit of a worker cycle. They hold no locks across
awaits, so they are safe for any number of concurrent callers on one loop.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """
    Permit spacing limiter.

    Each acquire() reserves the next free slot (slots are 1/rate seconds
    apart) and sleeps until it. A limiter idle for a while does not bank
    permits: the next slot is never earlier than "now".
    """

    def __init__(
        self,
        rate: int,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self._interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0

    async def acquire(self) -> None:
        """Wait for a permit. Never fails, only delays."""
        now = self._clock()
        slot = max(now, self._next_slot)
        self._next_slot = slot + self._interval
        delay = slot - now
        if delay > 0:
            await self._sleep(delay)


class Cooldown:
    """
    Shared backoff deadline.

    trip() pushes the deadline out (never pulls it in); wait() parks the
    caller until the deadline passes, re-checking in case it moved.
    """

    def __init__(
        self,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._until = 0.0

    @property
    def remaining(self) -> float:
        return max(0.0, self._until - self._clock())

    @property
    def active(self) -> bool:
        return self.remaining > 0

    def trip(self, seconds: float) -> float:
        """Extend the deadline to at least `seconds` from now. Returns seconds left."""
        deadline = self._clock() + max(0.0, seconds)
        if deadline > self._until:
            self._until = deadline
            logger.debug(f"Accrual cooldown extended to {seconds:.1f}s from now")
        return self.remaining

    async def wait(self) -> None:
        while True:
            remaining = self.remaining
            if remaining <= 0:
                return
            await self._sleep(remaining)
