"""Fan-out of account state changes to live dashboard connections."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from monitor.broadcast.messages import (
    AccountPayload,
    AccountUpdateMessage,
    DashboardStatus,
    InitialSnapshotMessage,
    LogEntryMessage,
    LogEntryPayload,
    RefreshCommand,
    SessionStatusMessage,
    SessionStatusPayload,
    ShutdownCommand,
    SnapshotMetadata,
    SnapshotPayload,
    SystemNoticeMessage,
    SystemNoticePayload,
    parse_client_command,
    to_epoch_ms,
)
from monitor.state.store import StatusKind

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from monitor.api.models import TrafficEntry
    from monitor.auth.manager import SessionStatus
    from monitor.broadcast.protocol import ConnectionProtocol
    from monitor.config import WatchedAccount
    from monitor.state.store import Snapshot, UserStateStore

logger = structlog.get_logger()

DEFAULT_SEND_TIMEOUT_SECONDS = 5.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 1.0
GOING_AWAY = 1001

PLACEHOLDER_OFFLINE = "Server not connected"
PLACEHOLDER_INITIALIZING = "Initializing..."
SHUTDOWN_NOTICE = "Server is shutting down"


def terminate_process() -> None:  # pragma: no cover - kills the test runner
    """Ask the serving process to shut down through its normal signal path."""
    os.kill(os.getpid(), signal.SIGTERM)


def _snapshot_payload(snapshot: Snapshot) -> SnapshotPayload:
    return SnapshotPayload(
        profile=snapshot.profile.to_wire() if snapshot.profile is not None else None,
        status=DashboardStatus.OK if snapshot.status_kind is StatusKind.OK else DashboardStatus.ERROR,
        error_message=snapshot.error_message,
        observed_at=to_epoch_ms(snapshot.observed_at),
    )


class BroadcastHub:
    """Registry of live connections and the messages they receive.

    Sends to one connection are serialized by a per-connection lock; a
    broadcast sends to all connections concurrently. A connection whose send
    fails or exceeds ``send_timeout`` is dropped without affecting others.
    """

    def __init__(
        self,
        accounts: Sequence[WatchedAccount],
        store: UserStateStore,
        session_status: Callable[[], SessionStatus],
        *,
        server_started_at: datetime,
        send_timeout: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
        terminate: Callable[[], None] = terminate_process,
    ) -> None:
        self._accounts = list(accounts)
        self._store = store
        self._session_status = session_status
        self._server_started_at = server_started_at
        self._send_timeout = send_timeout
        self._shutdown_grace = shutdown_grace
        self._terminate = terminate
        self._connections: dict[str, ConnectionProtocol] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._shutdown_handle: asyncio.TimerHandle | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def register(self, connection: ConnectionProtocol) -> None:
        """Add a connection and send it the session status and full roster."""
        self._connections[connection.connection_id] = connection
        self._send_locks.setdefault(connection.connection_id, asyncio.Lock())
        logger.info("dashboard client registered", connection_id=connection.connection_id, total=len(self._connections))
        await self._send(connection, self._session_status_message(), self._initial_snapshot_message())

    def unregister(self, connection: ConnectionProtocol) -> None:
        if self._connections.pop(connection.connection_id, None) is None:
            return
        self._send_locks.pop(connection.connection_id, None)
        logger.info("dashboard client unregistered", connection_id=connection.connection_id, total=len(self._connections))

    async def publish(self, account_id: str) -> None:
        """Send the latest state of one account to every live connection."""
        account = next((a for a in self._accounts if a.account_id == account_id), None)
        if account is None:
            logger.warning("publish for unknown account", account_id=account_id)
            return
        message = AccountUpdateMessage(payload=self._account_payload(account, include_history=False))
        await self._broadcast(message.to_wire())

    async def broadcast_session_status(self, _status: SessionStatus | None = None) -> None:
        await self._broadcast(self._session_status_message())

    async def publish_log_entry(self, entry: TrafficEntry) -> None:
        if not self._connections:
            return
        message = LogEntryMessage(
            payload=LogEntryPayload(
                direction=entry.direction,
                summary=entry.summary,
                content=entry.content,
                timestamp=to_epoch_ms(entry.timestamp),
            )
        )
        await self._broadcast(message.to_wire())

    async def send_snapshot(self, connection: ConnectionProtocol) -> None:
        await self._send(connection, self._initial_snapshot_message())

    async def handle_client_message(self, connection: ConnectionProtocol, text: str) -> None:
        try:
            command = parse_client_command(text)
        except (ValueError, ValidationError):
            logger.warning("ignoring unrecognized client message", connection_id=connection.connection_id)
            return

        match command:
            case RefreshCommand():
                logger.info("client requested refresh", connection_id=connection.connection_id)
                await self.send_snapshot(connection)
            case ShutdownCommand():
                logger.warning("shutdown requested by client", connection_id=connection.connection_id)
                await self.shutdown()

    async def shutdown(self, message: str = SHUTDOWN_NOTICE) -> None:
        """Notify clients, close every connection, then terminate after the grace delay."""
        notice = SystemNoticeMessage(payload=SystemNoticePayload(action="shutdown", message=message))
        await self._broadcast(notice.to_wire())
        await self.close_all(code=GOING_AWAY, reason="Server shutting down")
        if self._shutdown_handle is None:
            loop = asyncio.get_running_loop()
            self._shutdown_handle = loop.call_later(self._shutdown_grace, self._terminate)

    async def close_all(self, code: int = GOING_AWAY, reason: str = "") -> None:
        connections = list(self._connections.values())
        for connection in connections:
            self.unregister(connection)
        for connection in connections:
            with contextlib.suppress(RuntimeError, OSError, ConnectionError):
                await connection.close(code=code, reason=reason)

    # -- message builders ----------------------------------------------------

    def _session_status_message(self) -> dict[str, Any]:
        status = self._session_status()
        return SessionStatusMessage(
            payload=SessionStatusPayload(
                has_active_session=status.has_active_session,
                last_established_at=to_epoch_ms(status.last_established_at),
                state=status.state,
                pending_second_factor_kind=status.pending_second_factor,
            )
        ).to_wire()

    def _initial_snapshot_message(self) -> dict[str, Any]:
        return InitialSnapshotMessage(
            payload=[self._account_payload(account, include_history=True) for account in self._accounts],
            metadata=SnapshotMetadata(server_start_time=to_epoch_ms(self._server_started_at)),
        ).to_wire()

    def _account_payload(self, account: WatchedAccount, *, include_history: bool) -> AccountPayload:
        state = self._store.snapshot(account.account_id)
        if state is None:
            latest = self._placeholder()
            history: list[SnapshotPayload] | None = [] if include_history else None
        else:
            latest = _snapshot_payload(state.latest)
            history = [_snapshot_payload(s) for s in state.history] if include_history else None
        return AccountPayload(
            account_id=account.account_id,
            label=account.display_label,
            volume_hint=account.volume_hint,
            latest=latest,
            history=history,
        )

    def _placeholder(self) -> SnapshotPayload:
        if self._session_status().has_active_session:
            return SnapshotPayload(status=DashboardStatus.ERROR, error_message=PLACEHOLDER_INITIALIZING)
        return SnapshotPayload(status=DashboardStatus.OFFLINE, error_message=PLACEHOLDER_OFFLINE)

    # -- delivery ------------------------------------------------------------

    async def _broadcast(self, message: dict[str, Any]) -> None:
        connections = list(self._connections.values())
        if not connections:
            return
        await asyncio.gather(*(self._send(connection, message) for connection in connections))

    async def _send(self, connection: ConnectionProtocol, *messages: dict[str, Any]) -> None:
        """Send messages in order, holding the connection lock across all of them."""
        lock = self._send_locks.get(connection.connection_id)
        if lock is None:
            return
        try:
            async with lock:
                for message in messages:
                    await asyncio.wait_for(connection.send_message(message), timeout=self._send_timeout)
        except (TimeoutError, RuntimeError, OSError, ConnectionError) as exc:
            logger.warning(
                "dropping dashboard client after failed send",
                connection_id=connection.connection_id,
                error=str(exc) or type(exc).__name__,
            )
            self.unregister(connection)
