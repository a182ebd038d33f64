"""Repeating per-account poll timer."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = structlog.get_logger()


class PollTimer:
    """Fire ``on_tick`` after ``initial_delay`` and then every ``interval`` seconds.

    The callback is synchronous so a tick can never block the timer; the
    delay between ticks is fixed (measured from the end of the previous tick).
    """

    def __init__(
        self,
        account_id: str,
        interval: float,
        on_tick: Callable[[str], object],
        *,
        initial_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self._interval = interval
        self._initial_delay = initial_delay
        self._on_tick = on_tick
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll-timer-{self.account_id}")

    def cancel(self) -> asyncio.Task[None] | None:
        """Cancel the timer task and return it so callers may await its exit."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def _run(self) -> None:
        try:
            await self._sleep(self._initial_delay)
            while True:
                try:
                    self._on_tick(self.account_id)
                except Exception:
                    logger.exception("poll tick failed", account_id=self.account_id)
                await self._sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("poll timer cancelled", account_id=self.account_id)
            raise
