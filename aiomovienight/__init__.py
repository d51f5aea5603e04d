"""MovieNight: synchronized group video playback over websockets."""

from __future__ import annotations

# Re-export the client library for easy import
from aiomovienight.client import (
    DeniedCallback,
    MovieNightClient,
    PlayerEvent,
    PlayerSurface,
    RoleCallback,
    SimulatedPlayer,
)
from aiomovienight.config import SessionConfig, load_session_config
from aiomovienight.errors import (
    MovieNightError,
    NotConnectedError,
    PlaybackNotAllowedError,
    SessionConfigError,
)

__all__ = [
    "DeniedCallback",
    "MovieNightClient",
    "MovieNightError",
    "NotConnectedError",
    "PlaybackNotAllowedError",
    "PlayerEvent",
    "PlayerSurface",
    "RoleCallback",
    "SessionConfig",
    "SessionConfigError",
    "SimulatedPlayer",
    "load_session_config",
]
