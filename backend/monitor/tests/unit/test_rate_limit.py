"""Tests for the global outbound call spacing limiter."""

import asyncio

import pytest

from monitor.api.rate_limit import RateLimiter
from monitor.tests.mocks import settle


def _limiter(clock):
    return RateLimiter(clock=clock.monotonic, sleep=clock.sleep)


class TestRateLimiter:
    async def test_first_acquire_does_not_wait(self, clock):
        """A fresh limiter lets the first call start immediately."""
        limiter = _limiter(clock)
        start = clock.now

        await limiter.acquire()

        assert clock.now == start
        assert limiter._last_start == start

    async def test_required_wait_combines_both_rules(self, clock):
        """The wait is the larger of the start-interval and release-gap remainders."""
        limiter = _limiter(clock)
        limiter._last_start = 100.0
        limiter._last_release = 100.8

        assert limiter.required_wait(100.9) == pytest.approx(0.4)
        assert limiter.required_wait(101.0) == pytest.approx(0.3)
        assert limiter.required_wait(102.0) == 0.0

    async def test_sequential_calls_respect_both_gaps(self, clock):
        """Every acquire completes >=1s after the previous one and >=0.5s after its release."""
        limiter = _limiter(clock)
        durations = [0.1, 0.9, 0.0, 2.0, 0.7, 0.3]
        acquired: list[float] = []
        released: list[float] = []

        async def run_calls():
            for duration in durations:
                await limiter.acquire()
                acquired.append(clock.now)
                await clock.sleep(duration)
                limiter.release()
                released.append(clock.now)

        task = asyncio.create_task(run_calls())
        await clock.advance(60)
        await task

        assert len(acquired) == len(durations)
        for i in range(1, len(acquired)):
            assert acquired[i] - acquired[i - 1] >= 1.0 - 1e-9
            assert acquired[i] - released[i - 1] >= 0.5 - 1e-9

    async def test_concurrent_callers_are_spaced(self, clock):
        """Concurrent callers are admitted one at a time in arrival order."""
        limiter = _limiter(clock)
        order: list[tuple[int, float]] = []

        async def caller(index: int):
            await limiter.acquire()
            order.append((index, clock.now))
            limiter.release()

        tasks = [asyncio.create_task(caller(i)) for i in range(5)]
        await clock.advance(30)
        await asyncio.gather(*tasks)

        assert [index for index, _ in order] == [0, 1, 2, 3, 4]
        times = [t for _, t in order]
        assert all(b - a >= 1.0 - 1e-9 for a, b in zip(times, times[1:], strict=False))

    async def test_cancelled_waiter_does_not_mark_start(self, clock):
        """Cancelling a waiting acquire leaves the last start untouched."""
        limiter = _limiter(clock)
        await limiter.acquire()
        first_start = limiter._last_start
        limiter.release()

        waiter = asyncio.create_task(limiter.acquire())
        await settle()
        assert not waiter.done()

        waiter.cancel()
        await settle()

        assert waiter.cancelled()
        assert limiter._last_start == first_start
        assert not limiter._lock.locked()

    async def test_slot_releases_on_error(self, clock):
        """The slot context manager records a release even when the call fails."""
        limiter = _limiter(clock)

        with pytest.raises(RuntimeError, match="boom"):
            async with limiter.slot():
                raise RuntimeError("boom")

        assert limiter._last_release == clock.now
