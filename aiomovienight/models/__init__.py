"""Models for the movienight synchronization protocol."""

from __future__ import annotations

__all__ = [
    "ClientMessage",
    "ClientProfile",
    "CommandType",
    "LeaderDenyReason",
    "NetworkQuality",
    "ServerMessage",
    "core",
    "follower",
    "leader",
    "sync",
    "types",
]

# Every message module must be imported so the discriminated unions know
# all subtypes before the first from_json call.
from . import core, follower, leader, sync, types
from .types import (
    ClientMessage,
    ClientProfile,
    CommandType,
    LeaderDenyReason,
    NetworkQuality,
    ServerMessage,
)
