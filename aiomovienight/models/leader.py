"""Messages sent by the leader to drive the canonical playback state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, CommandType


@dataclass
class LeaderControlPayload(DataClassORJSONMixin):
    """A play, pause or seek performed on the leader's player."""

    type: CommandType
    current_time: float
    """Leader position in seconds when the event fired."""
    is_playing: bool | None = None
    """Play state after the event, only meaningful for seeks."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class LeaderControlMessage(ClientMessage):
    """Discrete control event from the leader."""

    payload: LeaderControlPayload
    type: Literal["leader/control"] = "leader/control"


@dataclass
class LeaderHeartbeatPayload(DataClassORJSONMixin):
    """Periodic position of a playing leader."""

    current_time: float


@dataclass
class LeaderHeartbeatMessage(ClientMessage):
    """Heartbeat sent while the leader is playing."""

    payload: LeaderHeartbeatPayload
    type: Literal["leader/heartbeat"] = "leader/heartbeat"


@dataclass
class LeaderFullStatePayload(DataClassORJSONMixin):
    """Complete playback state of the leader."""

    current_time: float
    is_playing: bool


@dataclass
class LeaderFullStateMessage(ClientMessage):
    """Periodic full-state broadcast from the leader."""

    payload: LeaderFullStatePayload
    type: Literal["leader/full-state"] = "leader/full-state"
