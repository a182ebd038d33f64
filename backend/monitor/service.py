"""Composition root wiring the monitor components together."""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from monitor.api.client import ApiClient
from monitor.api.rate_limit import RateLimiter
from monitor.auth.manager import AuthSessionManager
from monitor.auth.session_cache import FileSessionCache
from monitor.broadcast.hub import GOING_AWAY, BroadcastHub, terminate_process
from monitor.polling.scheduler import PollScheduler
from monitor.state.store import UserStateStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

    from monitor.auth.manager import SessionStatus
    from monitor.config import MonitorConfig
    from monitor.server.settings import MonitorSettings

logger = structlog.get_logger()


class MonitorService:
    """Own every long-lived component and their lifecycle.

    Session activity drives polling: the scheduler starts when a session
    becomes active and stops when it ends, and every change is pushed to
    connected dashboards.
    """

    def __init__(
        self,
        config: MonitorConfig,
        settings: MonitorSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        terminate: Callable[[], None] = terminate_process,
    ) -> None:
        self.config = config
        self.settings = settings
        self.started_at = datetime.now(UTC)

        self.rate_limiter = RateLimiter(clock=clock, sleep=sleep)
        self.api_client = ApiClient(
            self.rate_limiter,
            base_url=settings.api_base_url,
            user_agent=settings.user_agent,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            sleep=sleep,
        )
        session_cache = FileSessionCache(settings.session_cache_path) if config.cache_session else None
        self.auth = AuthSessionManager(self.api_client, session_cache)
        self.store = UserStateStore()
        self.hub = BroadcastHub(
            config.accounts,
            self.store,
            self.auth.status,
            server_started_at=self.started_at,
            send_timeout=settings.send_timeout_seconds,
            shutdown_grace=settings.shutdown_grace_seconds,
            terminate=terminate,
        )
        self.scheduler = PollScheduler(
            config.accounts,
            self.api_client,
            self.auth,
            self.store,
            self.hub,
            queue_size=settings.poll_queue_size,
            initial_delay=settings.poll_initial_delay_seconds,
            sleep=sleep,
        )
        self.auth.add_listener(self._on_session_change)
        if settings.broadcast_traffic:
            self.api_client.add_traffic_observer(self.hub.publish_log_entry)
        self._validation_task: asyncio.Task[bool] | None = None

    async def start(self) -> None:
        """Restore a cached session, if any, and probe it in the background."""
        restored = await self.auth.restore()
        if restored and self.settings.validate_session_on_startup:
            self._validation_task = asyncio.create_task(self.auth.validate(), name="session-validation")
        logger.info("monitor service started", accounts=len(self.config.accounts), restored_session=restored)

    async def shutdown(self) -> None:
        if self._validation_task is not None and not self._validation_task.done():
            self._validation_task.cancel()
            await asyncio.gather(self._validation_task, return_exceptions=True)
        await self.scheduler.stop()
        await self.hub.close_all(code=GOING_AWAY, reason="Server shutting down")
        await self.api_client.aclose()
        logger.info("monitor service stopped")

    async def _on_session_change(self, status: SessionStatus) -> None:
        if status.has_active_session:
            self.scheduler.start()
        else:
            await self.scheduler.stop()
        await self.hub.broadcast_session_status(status)
