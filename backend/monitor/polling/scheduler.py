"""Per-account poll timers funneled into a single serialized dispatcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

import structlog

from monitor.api.models import AccountRecord, ApiFailure
from monitor.polling.timer import PollTimer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from monitor.api.client import ApiClient
    from monitor.config import WatchedAccount
    from monitor.session import Session
    from monitor.state.store import UserStateStore

logger = structlog.get_logger()

DEFAULT_QUEUE_SIZE = 64
DEFAULT_INITIAL_DELAY_SECONDS = 3.0


class SessionGate(Protocol):
    @property
    def session(self) -> Session: ...

    def has_active_session(self) -> bool: ...


class UpdatePublisher(Protocol):
    async def publish(self, account_id: str) -> None: ...


class PollScheduler:
    """Poll every watched account on its own interval through one dispatcher.

    Timers only enqueue account ids; they never block. The dispatcher is
    the single consumer of the bounded queue and the only task that calls
    the API client, so outbound polling traffic is serialized by
    construction and per-account order follows tick order.

    ``stop()`` cancels timers first, discards whatever is still queued and
    lets the in-flight poll (if any) finish before the dispatcher exits.
    """

    def __init__(
        self,
        accounts: Sequence[WatchedAccount],
        api_client: ApiClient,
        session_gate: SessionGate,
        store: UserStateStore,
        publisher: UpdatePublisher,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._accounts = list(accounts)
        self._api = api_client
        self._gate = session_gate
        self._store = store
        self._publisher = publisher
        self._queue_size = queue_size
        self._initial_delay = initial_delay
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(UTC))
        self._queue: asyncio.Queue[str | None] | None = None
        self._timers: list[PollTimer] = []
        self._dispatcher: asyncio.Task[None] | None = None
        self._in_flight: str | None = None

    @property
    def running(self) -> bool:
        return self._queue is not None

    @property
    def in_flight(self) -> str | None:
        return self._in_flight

    def start(self) -> None:
        """Start the dispatcher and one timer per account. No-op when running."""
        if self.running:
            return
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self._queue_size)
        self._queue = queue
        self._dispatcher = asyncio.create_task(self._dispatch(queue), name="poll-dispatcher")
        self._timers = [
            PollTimer(
                account.account_id,
                account.poll_interval_seconds,
                self.enqueue,
                initial_delay=self._initial_delay,
                sleep=self._sleep,
            )
            for account in self._accounts
        ]
        for timer in self._timers:
            timer.start()
        logger.info("polling started", accounts=len(self._accounts))

    def enqueue(self, account_id: str) -> bool:
        """Queue a poll for ``account_id``. Drops the tick when the queue is full."""
        if self._queue is None:
            return False
        try:
            self._queue.put_nowait(account_id)
        except asyncio.QueueFull:
            logger.warning("poll queue full, dropping tick", account_id=account_id)
            return False
        return True

    async def stop(self) -> None:
        """Stop polling. Safe to call from inside the dispatcher itself."""
        queue, self._queue = self._queue, None
        if queue is None:
            return

        timer_tasks = [task for timer in self._timers if (task := timer.cancel()) is not None]
        self._timers = []
        if timer_tasks:
            await asyncio.gather(*timer_tasks, return_exceptions=True)

        discarded = 0
        while not queue.empty():
            queue.get_nowait()
            discarded += 1
        if discarded:
            logger.info("discarded queued polls", count=discarded)
        queue.put_nowait(None)

        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            await dispatcher
        logger.info("polling stopped")

    async def _dispatch(self, queue: asyncio.Queue[str | None]) -> None:
        while (account_id := await queue.get()) is not None:
            self._in_flight = account_id
            try:
                await self.poll_once(account_id)
            except Exception:
                logger.exception("poll failed", account_id=account_id)
                await self._record_unexpected(account_id)
            finally:
                self._in_flight = None

    async def poll_once(self, account_id: str) -> None:
        if not self._gate.has_active_session():
            logger.debug("no active session, skipping poll", account_id=account_id)
            return

        result = await self._api.fetch_account(self._gate.session, account_id)
        observed_at = self._now()
        match result:
            case AccountRecord():
                changed = self._store.record_success(account_id, result, observed_at)
                logger.debug("account polled", account_id=account_id, changed=changed, state=result.state)
            case ApiFailure():
                message = result.describe()
                changed = self._store.record_error(account_id, message, observed_at)
                logger.warning("account poll failed", account_id=account_id, error=message, changed=changed)

        if changed:
            await self._publish(account_id)

    async def _record_unexpected(self, account_id: str) -> None:
        if self._store.record_error(account_id, "Unexpected error while polling", self._now()):
            await self._publish(account_id)

    async def _publish(self, account_id: str) -> None:
        try:
            await self._publisher.publish(account_id)
        except Exception:
            logger.exception("publish failed", account_id=account_id)
