"""Public interface for the MovieNight client package."""

from .buffer import BufferHealth, BufferHealthGuard, GateVerdict
from .client import DeniedCallback, MovieNightClient, RoleCallback
from .dedup import CommandDeduplicator
from .drift import (
    AdaptiveSettings,
    DriftCorrectionEngine,
    EngineState,
    SyncOutcome,
    SyncTarget,
)
from .interaction import InteractionGuard
from .player import (
    PlayerError,
    PlayerErrorCode,
    PlayerEvent,
    PlayerSurface,
    ReadyState,
    SimulatedPlayer,
)

__all__ = [
    "AdaptiveSettings",
    "BufferHealth",
    "BufferHealthGuard",
    "CommandDeduplicator",
    "DeniedCallback",
    "DriftCorrectionEngine",
    "EngineState",
    "GateVerdict",
    "InteractionGuard",
    "MovieNightClient",
    "PlayerError",
    "PlayerErrorCode",
    "PlayerEvent",
    "PlayerSurface",
    "ReadyState",
    "RoleCallback",
    "SimulatedPlayer",
    "SyncOutcome",
    "SyncTarget",
]
