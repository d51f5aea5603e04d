"""Canonical playback state of a session."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from aiomovienight.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CanonicalState:
    """Last playback state reported by the leader."""

    current_time: float
    """Position in seconds at ``last_update``."""
    is_playing: bool
    last_update: float
    """Server monotonic time of the last leader event."""

    def position_at(self, now: float) -> float:
        """Return the position extrapolated to ``now``."""
        if not self.is_playing:
            return self.current_time
        return self.current_time + max(now - self.last_update, 0.0)


class SessionAuthority:
    """Owner of the canonical state, mutated only by validated leader events.

    The position is never stored live while playing; readers reconstruct it
    from the last leader event and the elapsed time.
    """

    def __init__(self, scheduler: Scheduler, start_time: float = 0.0) -> None:
        """Start paused at ``start_time``."""
        self._scheduler = scheduler
        self._state = CanonicalState(
            current_time=start_time,
            is_playing=False,
            last_update=scheduler.time(),
        )

    @property
    def is_playing(self) -> bool:
        """Return the canonical play state."""
        return self._state.is_playing

    def apply_leader_event(self, current_time: float, is_playing: bool | None = None) -> None:
        """Record a leader position, keeping the play state when ``is_playing`` is None."""
        now = max(self._scheduler.time(), self._state.last_update)
        if is_playing is None:
            is_playing = self._state.is_playing
        self._state = CanonicalState(
            current_time=current_time,
            is_playing=is_playing,
            last_update=now,
        )

    def current_position(self) -> float:
        """Return the extrapolated canonical position."""
        return self._state.position_at(self._scheduler.time())

    def snapshot(self) -> CanonicalState:
        """Return a copy of the stored state."""
        state = self._state
        return CanonicalState(state.current_time, state.is_playing, state.last_update)
