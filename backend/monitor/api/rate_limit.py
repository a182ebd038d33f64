"""Global spacing limiter for outbound calls to the third-party service."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = structlog.get_logger()

MIN_START_INTERVAL_SECONDS = 1.0
MIN_RELEASE_GAP_SECONDS = 0.5


class RateLimiter:
    """Enforce minimum spacing between outbound calls, process-wide.

    Two rules hold across every caller: consecutive call starts are at least
    ``min_start_interval`` apart, and a call never starts sooner than
    ``min_release_gap`` after the previous call was released.

    Waiters queue on a single asyncio.Lock (FIFO by arrival), so the
    read-modify-write of the timestamps is atomic. The start timestamp is
    only written after the wait completes; a cancelled waiter leaves the
    limiter untouched.
    """

    def __init__(
        self,
        min_start_interval: float = MIN_START_INTERVAL_SECONDS,
        min_release_gap: float = MIN_RELEASE_GAP_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._min_start_interval = min_start_interval
        self._min_release_gap = min_release_gap
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None
        self._last_release: float | None = None

    def required_wait(self, now: float) -> float:
        """Seconds a call starting at ``now`` would still have to wait."""
        wait = 0.0
        if self._last_start is not None:
            wait = max(wait, self._min_start_interval - (now - self._last_start))
        if self._last_release is not None:
            wait = max(wait, self._min_release_gap - (now - self._last_release))
        return wait

    async def acquire(self) -> None:
        """Wait until a new call may start, then mark it as started."""
        async with self._lock:
            while (wait := self.required_wait(self._clock())) > 0:
                logger.debug("rate limit wait", wait_seconds=round(wait, 3))
                await self._sleep(wait)
            self._last_start = self._clock()

    def release(self) -> None:
        """Mark the current call as finished."""
        self._last_release = self._clock()

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one rate-limited call slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
