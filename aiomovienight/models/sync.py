"""Messages the server sends to followers so they converge on the leader."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import CommandType, ServerMessage


@dataclass
class SyncControlPayload(DataClassORJSONMixin):
    """A command the follower should apply and acknowledge."""

    type: CommandType
    current_time: float
    command_id: str
    """Identifier to echo back in follower/ack."""
    is_playing: bool | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class SyncControlMessage(ServerMessage):
    """Leader command fanned out to followers, or a targeted resync."""

    payload: SyncControlPayload
    type: Literal["sync/control"] = "sync/control"


@dataclass
class SyncHeartbeatPayload(DataClassORJSONMixin):
    """Leader position relayed for passive drift detection."""

    current_time: float


@dataclass
class SyncHeartbeatMessage(ServerMessage):
    """Relayed leader heartbeat."""

    payload: SyncHeartbeatPayload
    type: Literal["sync/heartbeat"] = "sync/heartbeat"


@dataclass
class SyncStatePayload(DataClassORJSONMixin):
    """Extrapolated canonical state for a follower that joined late."""

    type: CommandType
    current_time: float
    is_playing: bool


@dataclass
class SyncStateMessage(ServerMessage):
    """Catch-up state for a late joiner."""

    payload: SyncStatePayload
    type: Literal["sync/state"] = "sync/state"


@dataclass
class SyncFullStatePayload(DataClassORJSONMixin):
    """Relayed full leader state."""

    current_time: float
    is_playing: bool


@dataclass
class SyncFullStateMessage(ServerMessage):
    """Relayed periodic full-state broadcast."""

    payload: SyncFullStatePayload
    type: Literal["sync/full-state"] = "sync/full-state"
