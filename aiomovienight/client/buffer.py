"""Buffering and power-suspension tracking for the power-constrained profile."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from aiomovienight.scheduler import DeferredCall, Scheduler

from .player import PlayerSurface

logger = logging.getLogger(__name__)

MIN_SAFE_BUFFER_S = 2.5
BUFFER_GRACE_PERIOD_S = 2.0
MIN_SUSPENSION_S = 0.5
SUSPENSION_DEBOUNCE_WINDOW_S = 2.0
MAX_SUSPENSION_S = 5.0
SUSPENSION_EMERGENCY_DRIFT_S = 15.0
BUFFER_EMERGENCY_DRIFT_S = 10.0


class BufferHealthReason(Enum):
    """Why the buffer was judged healthy or not."""

    HEALTHY = "healthy"
    NO_BUFFER_DATA = "no-buffer-data"
    ACTIVELY_BUFFERING = "actively-buffering"
    GRACE_PERIOD = "grace-period"
    LOW_BUFFER = "low-buffer"


@dataclass(slots=True)
class BufferHealth:
    """Snapshot of the local buffer verdict."""

    healthy: bool
    buffer_ahead: float
    in_grace_period: bool
    is_buffering: bool
    reason: BufferHealthReason


class GateVerdict(Enum):
    """Decision on whether a correction may touch the player now."""

    PROCEED = "proceed"
    DEFER_SUSPENDED = "defer-suspended"
    DEFER_BUFFER = "defer-buffer"


class BufferHealthGuard:
    """Track buffering and debounced power suspension of the local player.

    Buffering starts on a waiting signal and ends on can-play; corrections are
    unsafe while buffering, for a grace period afterwards, and while less than
    ``MIN_SAFE_BUFFER_S`` is buffered ahead.

    Suspend signals are debounced: a lone signal commits after
    ``MIN_SUSPENSION_S`` and a burst inside ``SUSPENSION_DEBOUNCE_WINDOW_S``
    waits the whole window. A committed suspension clears itself after
    ``MAX_SUSPENSION_S`` and on any recovery signal.
    """

    def __init__(self, player: PlayerSurface, scheduler: Scheduler) -> None:
        """Create a guard for ``player``."""
        self._player = player
        self._scheduler = scheduler
        self.is_buffering = False
        self.buffer_started_at: float | None = None
        self.last_buffer_ended_at: float | None = None
        self.suspended = False
        self.suspended_at: float | None = None
        self._suspend_signal_count = 0
        self._last_suspend_signal_at: float | None = None
        self._debounce = DeferredCall(scheduler)
        self._recovery = DeferredCall(scheduler)

    @property
    def suspension_pending(self) -> bool:
        """Return True while a suspend signal is being debounced."""
        return self._debounce.pending

    # Buffering

    def on_buffering_started(self) -> None:
        """Handle the player stalling for data."""
        if self.is_buffering:
            return
        self.is_buffering = True
        self.buffer_started_at = self._scheduler.time()
        logger.info("Buffering started")

    def on_buffering_ended(self) -> None:
        """Handle the player having enough data to resume."""
        if self.is_buffering:
            now = self._scheduler.time()
            started = self.buffer_started_at if self.buffer_started_at is not None else now
            self.is_buffering = False
            self.last_buffer_ended_at = now
            logger.info("Buffering ended after %dms", round((now - started) * 1000))
        self.clear_suspension("canplay")

    def health(self) -> BufferHealth:
        """Return the current buffer verdict."""
        buffer_ahead = self._player.buffered_ahead()
        if buffer_ahead is None:
            return BufferHealth(
                healthy=True,
                buffer_ahead=0.0,
                in_grace_period=False,
                is_buffering=self.is_buffering,
                reason=BufferHealthReason.NO_BUFFER_DATA,
            )

        in_grace_period = (
            self.last_buffer_ended_at is not None
            and self._scheduler.time() - self.last_buffer_ended_at < BUFFER_GRACE_PERIOD_S
        )
        if self.is_buffering:
            reason = BufferHealthReason.ACTIVELY_BUFFERING
        elif in_grace_period:
            reason = BufferHealthReason.GRACE_PERIOD
        elif buffer_ahead < MIN_SAFE_BUFFER_S:
            reason = BufferHealthReason.LOW_BUFFER
        else:
            reason = BufferHealthReason.HEALTHY
        return BufferHealth(
            healthy=reason is BufferHealthReason.HEALTHY,
            buffer_ahead=buffer_ahead,
            in_grace_period=in_grace_period,
            is_buffering=self.is_buffering,
            reason=reason,
        )

    # Power management

    def on_suspend_signal(self) -> None:
        """Handle a platform suspend signal, debouncing bursts."""
        now = self._scheduler.time()
        if (
            self._last_suspend_signal_at is None
            or now - self._last_suspend_signal_at > SUSPENSION_DEBOUNCE_WINDOW_S
        ):
            self._suspend_signal_count = 1
        else:
            self._suspend_signal_count += 1
        self._last_suspend_signal_at = now

        if self._suspend_signal_count == 1:
            self._debounce.schedule(MIN_SUSPENSION_S, self._commit_suspension)
        else:
            logger.debug(
                "Debouncing rapid suspend signals (%d in window)", self._suspend_signal_count
            )
            self._debounce.schedule(SUSPENSION_DEBOUNCE_WINDOW_S, self._commit_suspension)

    def _commit_suspension(self) -> None:
        if self.suspended:
            return
        self.suspended = True
        self.suspended_at = self._scheduler.time()
        logger.info("Media loading suspended by power management, pausing corrections")
        self._recovery.schedule(MAX_SUSPENSION_S, lambda: self.clear_suspension("timeout"))

    def clear_suspension(self, reason: str) -> None:
        """Leave the suspended state and drop any pending suspension."""
        if self.suspended:
            now = self._scheduler.time()
            started = self.suspended_at if self.suspended_at is not None else now
            self.suspended = False
            self.suspended_at = None
            self._recovery.cancel()
            logger.info(
                "Suspension cleared (%s) after %dms", reason, round((now - started) * 1000)
            )
        if self._debounce.pending:
            self._debounce.cancel()
            logger.debug("Cancelled pending suspension (%s)", reason)

    def on_playback_progress(self) -> None:
        """Handle evidence that playback is advancing."""
        self.clear_suspension("playback-progress")

    def on_user_interaction(self) -> None:
        """Handle a touch or click on the page."""
        self.clear_suspension("user-interaction")

    def on_foreground(self) -> None:
        """Handle the page returning from the background."""
        self.clear_suspension("visibility-foreground")

    # Correction gating

    def gate(self, drift: float) -> GateVerdict:
        """Decide whether a correction for ``drift`` seconds may run now.

        Suspension defers unless drift exceeds ``SUSPENSION_EMERGENCY_DRIFT_S``;
        an unhealthy buffer defers unless drift reaches
        ``BUFFER_EMERGENCY_DRIFT_S``. On emergency the guard is force-cleared.
        """
        if self.suspended:
            if drift > SUSPENSION_EMERGENCY_DRIFT_S:
                logger.warning("Emergency sync through suspension (drift: %.1fs)", drift)
                self.clear_suspension("emergency-override")
            else:
                logger.debug("Deferring sync, media suspended by power management")
                return GateVerdict.DEFER_SUSPENDED

        health = self.health()
        if not health.healthy:
            if drift < BUFFER_EMERGENCY_DRIFT_S:
                logger.debug(
                    "Deferring sync, buffer %s (%.1fs ahead, drift: %.1fs)",
                    health.reason.value,
                    health.buffer_ahead,
                    drift,
                )
                return GateVerdict.DEFER_BUFFER
            logger.warning("Forced sync, extreme drift (%.1fs) overrides buffer health", drift)
            self.last_buffer_ended_at = None
        return GateVerdict.PROCEED
