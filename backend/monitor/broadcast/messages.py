"""Wire messages exchanged with dashboard clients.

Server-to-client messages are JSON objects ``{"type": ..., "payload": ...}``
with camelCase keys and epoch-millisecond timestamps.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

_MAX_WS_MESSAGE_SIZE = 4096


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


class MessageType(StrEnum):
    SESSION_STATUS = "sessionStatus"
    INITIAL_SNAPSHOT = "initialSnapshot"
    ACCOUNT_UPDATE = "accountUpdate"
    SYSTEM_NOTICE = "systemNotice"
    LOG_ENTRY = "logEntry"


class DashboardStatus(StrEnum):
    OK = "OK"
    ERROR = "ERROR"
    OFFLINE = "OFFLINE"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SnapshotPayload(WireModel):
    profile: dict[str, Any] | None = None
    status: DashboardStatus
    error_message: str | None = None
    observed_at: int | None = None


class AccountPayload(WireModel):
    account_id: str
    label: str
    volume_hint: float | None = None
    latest: SnapshotPayload
    history: list[SnapshotPayload] | None = None


class SessionStatusPayload(WireModel):
    has_active_session: bool
    last_established_at: int | None
    state: str
    pending_second_factor_kind: str


class SnapshotMetadata(WireModel):
    server_start_time: int


class SystemNoticePayload(WireModel):
    action: str
    message: str


class LogEntryPayload(WireModel):
    direction: str
    summary: str
    content: str
    timestamp: int


class SessionStatusMessage(WireModel):
    type: Literal[MessageType.SESSION_STATUS] = MessageType.SESSION_STATUS
    payload: SessionStatusPayload


class InitialSnapshotMessage(WireModel):
    type: Literal[MessageType.INITIAL_SNAPSHOT] = MessageType.INITIAL_SNAPSHOT
    payload: list[AccountPayload]
    metadata: SnapshotMetadata


class AccountUpdateMessage(WireModel):
    type: Literal[MessageType.ACCOUNT_UPDATE] = MessageType.ACCOUNT_UPDATE
    payload: AccountPayload


class SystemNoticeMessage(WireModel):
    type: Literal[MessageType.SYSTEM_NOTICE] = MessageType.SYSTEM_NOTICE
    payload: SystemNoticePayload


class LogEntryMessage(WireModel):
    type: Literal[MessageType.LOG_ENTRY] = MessageType.LOG_ENTRY
    payload: LogEntryPayload


# -- client commands ---------------------------------------------------------


class RefreshCommand(BaseModel):
    type: Literal["refresh"]


class ShutdownCommand(BaseModel):
    type: Literal["shutdown"]


ClientCommand = Annotated[RefreshCommand | ShutdownCommand, Field(discriminator="type")]

_command_adapter: TypeAdapter[ClientCommand] = TypeAdapter(ClientCommand)


def parse_client_command(raw: str) -> RefreshCommand | ShutdownCommand:
    """Parse a client frame into a command.

    Accepts the bare text ``refresh``, JSON ``{"type": "refresh"|"shutdown"}``
    and the legacy ``{"type": "COMMAND", "command": "SHUTDOWN"}`` envelope.
    Raises ValueError for anything else.
    """
    byte_len = len(raw.encode("utf-8"))
    if byte_len > _MAX_WS_MESSAGE_SIZE:
        raise ValueError(f"Message too large ({byte_len} bytes, max {_MAX_WS_MESSAGE_SIZE})")
    text = raw.strip()
    if text.lower() == "refresh":
        return RefreshCommand(type="refresh")
    data = json.loads(text)
    if isinstance(data, dict) and data.get("type") == "COMMAND":
        data = {"type": str(data.get("command", "")).lower()}
    return _command_adapter.validate_python(data)
