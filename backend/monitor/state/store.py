"""In-memory latest state and bounded history per watched account."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from monitor.api.models import AccountRecord

HISTORY_CAPACITY = 100


class StatusKind(StrEnum):
    OK = "OK"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class Snapshot:
    profile: AccountRecord | None
    status_kind: StatusKind
    error_message: str | None
    observed_at: datetime


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Copy of one account's state, safe to hand to readers."""

    latest: Snapshot
    history: tuple[Snapshot, ...]


class AccountState:
    def __init__(self, first: Snapshot, capacity: int = HISTORY_CAPACITY) -> None:
        self.latest = first
        self.history: deque[Snapshot] = deque([first], maxlen=capacity)

    def append(self, snapshot: Snapshot) -> None:
        self.latest = snapshot
        self.history.append(snapshot)

    def refresh(self, snapshot: Snapshot) -> None:
        """Replace the newest entry instead of growing history."""
        self.latest = snapshot
        if self.history:
            self.history[-1] = snapshot
        else:
            self.history.append(snapshot)


def _profile_changed(previous: AccountRecord | None, current: AccountRecord | None) -> bool:
    if previous is None or current is None:
        return previous is not current
    return previous.state != current.state or previous.status != current.status


class UserStateStore:
    """Latest snapshot plus bounded history for each account.

    Written only by the poll dispatcher. Readers receive immutable snapshots
    and tuple copies of history, so they never observe a partial update.
    Both record methods return whether the update counts as a change that
    clients should hear about.
    """

    def __init__(self, history_capacity: int = HISTORY_CAPACITY) -> None:
        self._capacity = history_capacity
        self._states: dict[str, AccountState] = {}

    def record_success(self, account_id: str, record: AccountRecord | None, observed_at: datetime) -> bool:
        snapshot = Snapshot(
            profile=record,
            status_kind=StatusKind.OK,
            error_message=None,
            observed_at=observed_at,
        )
        state = self._states.get(account_id)
        if state is None:
            self._states[account_id] = AccountState(snapshot, self._capacity)
            return True

        previous = state.latest
        changed = previous.status_kind is StatusKind.ERROR or _profile_changed(previous.profile, record)
        if changed:
            state.append(snapshot)
        else:
            state.refresh(snapshot)
        return changed

    def record_error(self, account_id: str, message: str, observed_at: datetime) -> bool:
        state = self._states.get(account_id)
        previous = state.latest if state is not None else None
        # an error keeps showing the last good profile; repeated errors drop it
        carried = previous.profile if previous is not None and previous.status_kind is StatusKind.OK else None
        snapshot = Snapshot(
            profile=carried,
            status_kind=StatusKind.ERROR,
            error_message=message,
            observed_at=observed_at,
        )
        if state is None:
            self._states[account_id] = AccountState(snapshot, self._capacity)
            return True

        changed = previous.status_kind is StatusKind.OK
        if changed:
            state.append(snapshot)
        else:
            state.refresh(snapshot)
        return changed

    def latest(self, account_id: str) -> Snapshot | None:
        state = self._states.get(account_id)
        return state.latest if state is not None else None

    def snapshot(self, account_id: str) -> AccountSnapshot | None:
        state = self._states.get(account_id)
        if state is None:
            return None
        return AccountSnapshot(latest=state.latest, history=tuple(state.history))

    def account_ids(self) -> list[str]:
        return list(self._states)
