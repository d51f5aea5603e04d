"""
MovieNight Server implementation to host one synchronized playback session.

MovieNightServer is the authority of the shared session, responsible for:
- Granting the single leader slot
- Keeping the canonical playback state
- Fanning out leader commands and resyncing drifting followers
"""

__all__ = [
    "CanonicalState",
    "Command",
    "CommandDispatcher",
    "Connection",
    "FollowerSyncStatus",
    "LeaderArbiter",
    "LeaderChangedEvent",
    "LeaderDecision",
    "MovieNightEvent",
    "MovieNightServer",
    "SessionAuthority",
    "SyncSummary",
    "ViewerJoinedEvent",
    "ViewerLeftEvent",
    "ViewerStatus",
    "ViewerSyncMonitor",
]

from .connection import Connection
from .dispatcher import Command, CommandDispatcher
from .leader import LeaderArbiter, LeaderDecision
from .monitor import FollowerSyncStatus, SyncSummary, ViewerStatus, ViewerSyncMonitor
from .server import (
    LeaderChangedEvent,
    MovieNightEvent,
    MovieNightServer,
    ViewerJoinedEvent,
    ViewerLeftEvent,
)
from .session import CanonicalState, SessionAuthority
