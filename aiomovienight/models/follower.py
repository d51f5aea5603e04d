"""Messages sent by followers back to the server."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, NetworkQuality


@dataclass
class FollowerStatusPayload(DataClassORJSONMixin):
    """Periodic self-report of a follower's player."""

    current_time: float
    is_playing: bool
    buffering: bool
    network_quality: NetworkQuality


@dataclass
class FollowerStatusMessage(ClientMessage):
    """Follower self-report used for passive drift detection."""

    payload: FollowerStatusPayload
    type: Literal["follower/status"] = "follower/status"


@dataclass
class SyncAckPayload(DataClassORJSONMixin):
    """Outcome of applying a sync/control command."""

    command_id: str
    success: bool
    current_time: float
    """Follower position when the attempt concluded."""


@dataclass
class SyncAckMessage(ClientMessage):
    """Acknowledgment of a sync/control command."""

    payload: SyncAckPayload
    type: Literal["follower/ack"] = "follower/ack"
