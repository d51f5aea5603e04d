"""Core messages for the movienight protocol.

This module contains the messages that establish a session between clients and
the server: the join handshake, leader arbitration results and the ping/pong
exchange used to measure round-trip time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, ClientProfile, LeaderDenyReason, ServerMessage


# Client -> Server core messages
@dataclass
class JoinPayload(DataClassORJSONMixin):
    """Information sent by a client when it enters the session."""

    client_id: str
    """Uniquely identifies the client across reconnects."""
    name: str
    """Friendly name of the client."""
    is_leader: bool = False
    """Whether the client requests the leader slot."""
    start_time: float | None = None
    """Stream position the client starts from, in seconds."""
    client_profile: ClientProfile | None = None
    """Timing profile of the client's media pipeline, guessed from the User-Agent if unset."""
    password: str | None = None
    """Leader password, only checked when is_leader is set."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class JoinMessage(ClientMessage):
    """Message sent by the client to join the session."""

    payload: JoinPayload
    type: Literal["session/join"] = "session/join"


@dataclass
class PingPayload(DataClassORJSONMixin):
    """Round-trip probe."""

    timestamp: int
    """Sender's monotonic clock in milliseconds, echoed back in the pong."""
    rtt_ms: float | None = None
    """Most recent round-trip time the sender measured, if any."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class PongPayload(DataClassORJSONMixin):
    """Echo of a ping."""

    timestamp: int
    """Timestamp copied from the ping."""


@dataclass
class PingClientMessage(ClientMessage):
    """Ping sent by a client."""

    payload: PingPayload
    type: Literal["ping"] = "ping"


@dataclass
class PongClientMessage(ClientMessage):
    """Pong sent by a client in reply to a server ping."""

    payload: PongPayload
    type: Literal["pong"] = "pong"


# Server -> Client core messages
@dataclass
class PingServerMessage(ServerMessage):
    """Ping sent by the server."""

    payload: PingPayload
    type: Literal["ping"] = "ping"


@dataclass
class PongServerMessage(ServerMessage):
    """Pong sent by the server in reply to a client ping."""

    payload: PongPayload
    type: Literal["pong"] = "pong"


@dataclass
class LeaderStatusPayload(DataClassORJSONMixin):
    """Whether the session currently has a live leader."""

    has_leader: bool


@dataclass
class LeaderStatusMessage(ServerMessage):
    """Broadcast whenever the leader slot is granted or cleared."""

    payload: LeaderStatusPayload
    type: Literal["session/leader-status"] = "session/leader-status"


@dataclass
class LeaderInfo(DataClassORJSONMixin):
    """Identity of the connection holding the leader slot."""

    client_id: str
    name: str


@dataclass
class LeaderGrantedPayload(DataClassORJSONMixin):
    """Confirmation that the requester now leads the session."""

    message: str = "You are now the leader"


@dataclass
class LeaderGrantedMessage(ServerMessage):
    """Sent to a client that won the leader slot."""

    payload: LeaderGrantedPayload
    type: Literal["leader/granted"] = "leader/granted"


@dataclass
class LeaderDeniedPayload(DataClassORJSONMixin):
    """Refusal of a leadership request."""

    reason: LeaderDenyReason
    leader: LeaderInfo | None = None
    """The current holder, set when the slot is taken."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class LeaderDeniedMessage(ServerMessage):
    """Sent to a client whose leadership request was refused."""

    payload: LeaderDeniedPayload
    type: Literal["leader/denied"] = "leader/denied"
