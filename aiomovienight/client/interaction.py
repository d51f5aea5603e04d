"""Reversal of play, pause and seek actions a follower performs on its own."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from aiomovienight.errors import PlaybackNotAllowedError
from aiomovienight.scheduler import DeferredCall, Scheduler

from .player import PlayerSurface

logger = logging.getLogger(__name__)

PLAY_PAUSE_REVERT_DELAY_S = 0.001
SEEK_REVERT_DELAY_S = 0.01
SEEK_REVERT_COOLDOWN_S = 0.1
SEEK_FREQUENCY_WINDOW_S = 5.0
SEEK_FREQUENCY_LIMIT = 10
FREQUENCY_BYPASS_S = 10.0
EXTREME_SEEK_DRIFT_S = 300.0


class InteractionGuard:
    """Undo follower-initiated playback changes.

    Changes made while ``is_protocol_active()`` returns True come from the
    correction engine and are recorded as the last known-good state instead.
    Everything else is reverted on a short timer so the revert never runs
    inside the event that triggered it.
    """

    def __init__(
        self,
        player: PlayerSurface,
        scheduler: Scheduler,
        *,
        is_protocol_active: Callable[[], bool],
        bypass_active: Callable[[], bool] = lambda: False,
    ) -> None:
        """Create a guard; ``bypass_active`` reports the engine's emergency bypass."""
        self._player = player
        self._scheduler = scheduler
        self._is_protocol_active = is_protocol_active
        self._bypass_active = bypass_active
        self.last_valid_time = 0.0
        self.was_playing = False
        self._reverting = False
        self._last_seek_revert_at: float | None = None
        self._seek_reverts: deque[float] = deque()
        self._play_pause_revert = DeferredCall(scheduler)
        self._seek_revert = DeferredCall(scheduler)
        self._frequency_bypass = DeferredCall(scheduler)

    @property
    def frequency_bypass_active(self) -> bool:
        """Return True while seek blocking is off after a burst of reverts."""
        return self._frequency_bypass.pending

    @property
    def revert_pending(self) -> bool:
        """Return True while a revert is scheduled."""
        return self._play_pause_revert.pending or self._seek_revert.pending

    def remember(self, position: float, playing: bool) -> None:
        """Record ``position`` and ``playing`` as the state to restore."""
        self.last_valid_time = position
        self.was_playing = playing

    def on_time_update(self) -> None:
        """Track the known-good state while playback evolves legitimately."""
        playing = not self._player.paused
        if self._is_protocol_active() or (
            not self.revert_pending and playing == self.was_playing
        ):
            self.remember(self._player.current_time, playing)

    def _blocked(self) -> bool:
        return not (self._reverting or self._is_protocol_active() or self._bypass_active())

    def on_play_pause(self) -> None:
        """Handle a play or pause event, reverting it if the user caused it."""
        if not self._blocked():
            return
        action = "pause" if self._player.paused else "play"
        logger.info("Follower attempted to %s, reverting", action)
        self._play_pause_revert.schedule(PLAY_PAUSE_REVERT_DELAY_S, self._restore)

    def on_seeking(self) -> None:
        """Handle a seek, reverting it unless a safeguard lets it through."""
        if not self._blocked() or self.frequency_bypass_active:
            return

        drift = abs(self._player.current_time - self.last_valid_time)
        if drift > EXTREME_SEEK_DRIFT_S:
            logger.warning("Extreme drift detected (%.1fs), allowing seek to fix sync", drift)
            return

        now = self._scheduler.time()
        if (
            self._last_seek_revert_at is not None
            and now - self._last_seek_revert_at < SEEK_REVERT_COOLDOWN_S
        ):
            return

        self._seek_reverts.append(now)
        while self._seek_reverts and now - self._seek_reverts[0] >= SEEK_FREQUENCY_WINDOW_S:
            self._seek_reverts.popleft()
        if len(self._seek_reverts) >= SEEK_FREQUENCY_LIMIT:
            logger.warning(
                "Too many seek reverts, disabling seek blocking for %.0fs", FREQUENCY_BYPASS_S
            )
            self._seek_revert.cancel()
            self._frequency_bypass.schedule(FREQUENCY_BYPASS_S, self._end_frequency_bypass)
            return

        self._last_seek_revert_at = now
        logger.debug("Follower attempted to seek, reverting")
        self._seek_revert.schedule(SEEK_REVERT_DELAY_S, self._restore_position)

    def _end_frequency_bypass(self) -> None:
        self._seek_reverts.clear()
        logger.info("Frequency bypass ended, seek blocking re-enabled")

    def _restore(self) -> None:
        self._reverting = True
        try:
            if self.was_playing:
                try:
                    self._player.play()
                except PlaybackNotAllowedError:
                    logger.debug("Could not resume playback while reverting")
            else:
                self._player.pause()
            self._player.current_time = self.last_valid_time
        finally:
            self._reverting = False

    def _restore_position(self) -> None:
        self._reverting = True
        try:
            self._player.current_time = self.last_valid_time
        finally:
            self._reverting = False
