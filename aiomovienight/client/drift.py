"""Drift correction: drive the local player towards the leader's state.

Each correction runs a small state machine::

    IDLE -> APPLYING -> VERIFYING -> IDLE
                ^            |
                +-- retry ---+

Timing (tolerance, retry budget, report interval, spacing between
corrections) adapts to the measured network quality and is relaxed further
on the power-constrained profile, whose media pipeline shows large but
harmless timing jitter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from aiomovienight.errors import PlaybackNotAllowedError
from aiomovienight.models import CommandType, NetworkQuality
from aiomovienight.network_quality import NetworkQualityClassifier
from aiomovienight.scheduler import DeferredCall, Scheduler

from .buffer import MIN_SAFE_BUFFER_S, BufferHealthGuard, GateVerdict
from .player import PlayerSurface, ReadyState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdaptiveSettings:
    """Correction parameters for one network quality tier."""

    tolerance: float
    """Largest drift in seconds accepted without correcting."""
    max_retries: int
    """Attempts per correction before giving up."""
    heartbeat_interval: float
    """Seconds between follower status reports."""
    apply_delay: float
    """Minimum seconds between a concluded correction and a heartbeat-driven one."""


SYNC_SETTINGS: dict[NetworkQuality, AdaptiveSettings] = {
    NetworkQuality.EXCELLENT: AdaptiveSettings(0.3, 1, 3.0, 0.8),
    NetworkQuality.GOOD: AdaptiveSettings(0.5, 2, 3.0, 1.0),
    NetworkQuality.FAIR: AdaptiveSettings(1.0, 3, 2.0, 1.5),
    NetworkQuality.POOR: AdaptiveSettings(2.0, 5, 1.0, 2.0),
}
DEFAULT_SETTINGS = AdaptiveSettings(0.5, 3, 3.0, 1.0)

# Power-constrained profile adjustments
CONSTRAINED_TOLERANCE_FACTOR = 4.0
CONSTRAINED_MIN_TOLERANCE_S = 3.5
CONSTRAINED_RETRY_DELTA = -1
CONSTRAINED_HEARTBEAT_EXTRA_S = 1.5
CONSTRAINED_APPLY_DELAY_EXTRA_S = 0.8
CONSTRAINED_UNPAUSE_MIN_TOLERANCE_S = 4.0
LOW_BUFFER_MIN_MULTIPLIER = 1.5

# Timing of a single attempt
VERIFY_DELAY_S = 0.2
CONSTRAINED_VERIFY_DELAY_S = 0.25
CONSTRAINED_APPLY_STEP_S = 0.075
UNPAUSE_PREPOSITION_S = 0.1
UNPAUSE_SETTLE_S = 0.12
LARGE_SEEK_S = 300.0
HUGE_SEEK_S = 600.0

# Deferral retries while the player cannot take a correction
SUSPENDED_RECHECK_S = 1.0
BUFFER_RECHECK_S = 0.5
READY_STATE_RECHECK_S = 0.3

# Emergency bypass
MAX_CONSECUTIVE_GIVE_UPS = 3
EMERGENCY_BYPASS_S = 10.0

FULL_STATE_TOLERANCE_FACTOR = 2.0


class EngineState(Enum):
    """Phase of the current correction attempt."""

    IDLE = "idle"
    APPLYING = "applying"
    VERIFYING = "verifying"


@dataclass(frozen=True, slots=True)
class SyncTarget:
    """Position and play state the follower should converge to."""

    type: CommandType
    current_time: float
    is_playing: bool | None = None
    command_id: str | None = None
    """Set for commands that expect an acknowledgment."""

    @property
    def wants_play(self) -> bool:
        """Return True if the target requires playback to run."""
        return self.type is CommandType.PLAY or self.is_playing is True

    @property
    def wants_pause(self) -> bool:
        """Return True if the target requires playback to stop."""
        return not self.wants_play and (
            self.type is CommandType.PAUSE or self.is_playing is False
        )


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    """Result of a concluded correction."""

    target: SyncTarget
    success: bool
    position: float
    drift: float
    attempts: int


OutcomeCallback = Callable[[SyncOutcome], None]


def derive_settings(
    quality: NetworkQuality,
    *,
    constrained: bool,
    buffer_ahead: float | None = None,
) -> AdaptiveSettings:
    """Return the adaptive settings for ``quality``.

    ``buffer_ahead`` is only consulted on the constrained profile and only when
    the buffer was judged unhealthy; the tolerance then grows with the
    shortfall below the safe buffer margin.
    """
    settings = SYNC_SETTINGS.get(quality, DEFAULT_SETTINGS)
    if not constrained:
        return settings

    settings = AdaptiveSettings(
        tolerance=max(
            settings.tolerance * CONSTRAINED_TOLERANCE_FACTOR, CONSTRAINED_MIN_TOLERANCE_S
        ),
        max_retries=max(settings.max_retries + CONSTRAINED_RETRY_DELTA, 1),
        heartbeat_interval=settings.heartbeat_interval + CONSTRAINED_HEARTBEAT_EXTRA_S,
        apply_delay=settings.apply_delay + CONSTRAINED_APPLY_DELAY_EXTRA_S,
    )
    if buffer_ahead is not None and buffer_ahead < MIN_SAFE_BUFFER_S:
        multiplier = max(LOW_BUFFER_MIN_MULTIPLIER, (MIN_SAFE_BUFFER_S - buffer_ahead) / 2)
        settings = replace(settings, tolerance=settings.tolerance * multiplier)
    return settings


class DriftCorrectionEngine:
    """Apply leader commands and heartbeats to the local player with retries."""

    def __init__(
        self,
        player: PlayerSurface,
        scheduler: Scheduler,
        classifier: NetworkQualityClassifier,
        *,
        constrained: bool = False,
        buffer_guard: BufferHealthGuard | None = None,
        on_outcome: OutcomeCallback | None = None,
        on_gesture_required: Callable[[SyncTarget], None] | None = None,
    ) -> None:
        """Create an engine driving ``player``.

        ``buffer_guard`` gates corrections while the player is buffering or
        suspended. ``on_outcome`` receives every concluded attempt and
        ``on_gesture_required`` receives a target whose playback is waiting for
        a user gesture.
        """
        self._player = player
        self._scheduler = scheduler
        self._classifier = classifier
        self._constrained = constrained
        self._buffer_guard = buffer_guard
        self._on_outcome = on_outcome
        self._on_gesture_required = on_gesture_required

        self._state = EngineState.IDLE
        self._ready = player.ready_state >= ReadyState.HAVE_CURRENT_DATA
        self._parked: SyncTarget | None = None
        self._target: SyncTarget | None = None
        self._settings = DEFAULT_SETTINGS
        self._attempts = 0
        self._applied_at: float | None = None
        self._last_concluded_at: float | None = None
        self._consecutive_give_ups = 0

        self._deferred = DeferredCall(scheduler)
        self._step = DeferredCall(scheduler)
        self._verify = DeferredCall(scheduler)
        self._bypass = DeferredCall(scheduler)

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------
    @property
    def state(self) -> EngineState:
        """Return the phase of the current attempt."""
        return self._state

    @property
    def sync_in_progress(self) -> bool:
        """Return True while the engine itself is moving the player."""
        return self._state is not EngineState.IDLE

    @property
    def emergency_bypass_active(self) -> bool:
        """Return True while corrections and seek blocking are suspended."""
        return self._bypass.pending

    @property
    def consecutive_give_ups(self) -> int:
        """Return the number of corrections abandoned in a row."""
        return self._consecutive_give_ups

    @property
    def parked(self) -> SyncTarget | None:
        """Return the target waiting for readiness or for the bypass to end."""
        return self._parked

    @property
    def deferred(self) -> bool:
        """Return True while a correction waits for the buffer guard."""
        return self._deferred.pending

    @property
    def ready(self) -> bool:
        """Return True once the player has received initial data."""
        return self._ready

    def adaptive_settings(self) -> AdaptiveSettings:
        """Return the settings for the current quality and buffer state."""
        buffer_ahead: float | None = None
        if self._constrained and self._buffer_guard is not None:
            health = self._buffer_guard.health()
            if not health.healthy:
                buffer_ahead = health.buffer_ahead
        settings = derive_settings(
            self._classifier.quality,
            constrained=self._constrained,
            buffer_ahead=buffer_ahead,
        )
        if buffer_ahead is not None and buffer_ahead < MIN_SAFE_BUFFER_S:
            logger.debug(
                "Buffer-aware tolerance scaling, tolerance now %.1fs", settings.tolerance
            )
        return settings

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def on_ready(self) -> None:
        """Handle the player receiving its initial data."""
        self._ready = True
        if self._parked is not None and not self.emergency_bypass_active:
            target = self._parked
            self._parked = None
            logger.info(
                "Player ready, applying parked sync: %s at %.1fs",
                target.type.value,
                target.current_time,
            )
            self.apply(target)

    def apply(self, target: SyncTarget) -> None:
        """Converge on ``target``, deferring while the player cannot take it."""
        if not self._ready:
            logger.debug("Player not ready, parking sync for later")
            self._parked = target
            return
        if self.emergency_bypass_active:
            logger.debug("Emergency bypass active, parking sync")
            self._parked = target
            return

        drift = abs(target.current_time - self._player.current_time)
        if self._buffer_guard is not None:
            verdict = self._buffer_guard.gate(drift)
            if verdict is GateVerdict.DEFER_SUSPENDED:
                self._deferred.schedule(SUSPENDED_RECHECK_S, lambda: self.apply(target))
                return
            if verdict is GateVerdict.DEFER_BUFFER:
                self._deferred.schedule(BUFFER_RECHECK_S, lambda: self.apply(target))
                return
        if self._constrained and self._player.ready_state < ReadyState.HAVE_CURRENT_DATA:
            logger.debug("Delaying sync, low ready state (%d)", self._player.ready_state)
            self._deferred.schedule(READY_STATE_RECHECK_S, lambda: self.apply(target))
            return

        self._deferred.cancel()
        self._begin(target)

    def on_heartbeat(self, position: float) -> None:
        """Correct passive drift against a relayed leader heartbeat."""
        if self.sync_in_progress or not self._ready or self._player.paused:
            return
        settings = self.adaptive_settings()
        now = self._scheduler.time()
        if (
            self._last_concluded_at is not None
            and now - self._last_concluded_at < settings.apply_delay
        ):
            return
        drift = abs(self._player.current_time - position)
        if drift > settings.tolerance:
            logger.info(
                "Heartbeat sync needed, drift: %.1fs (tolerance: %.1fs)", drift, settings.tolerance
            )
            self.apply(SyncTarget(CommandType.SEEK, position, is_playing=True))

    def on_full_state(self, current_time: float, is_playing: bool) -> None:
        """Resync against a relayed full-state broadcast when clearly off."""
        if self.sync_in_progress:
            return
        settings = self.adaptive_settings()
        drift = abs(self._player.current_time - current_time)
        play_state_mismatch = self._player.paused == is_playing
        if drift > settings.tolerance * FULL_STATE_TOLERANCE_FACTOR or play_state_mismatch:
            logger.info(
                "Full state resync needed: drift %.1fs, play mismatch: %s",
                drift,
                play_state_mismatch,
            )
            self.apply(
                SyncTarget(
                    CommandType.PLAY if is_playing else CommandType.PAUSE,
                    current_time,
                    is_playing=is_playing,
                )
            )

    def cancel(self) -> None:
        """Abandon any attempt, deferral and parked target."""
        self._deferred.cancel()
        self._step.cancel()
        self._verify.cancel()
        self._parked = None
        self._target = None
        self._state = EngineState.IDLE

    # ------------------------------------------------------------------
    # Attempt state machine
    # ------------------------------------------------------------------
    def _begin(self, target: SyncTarget) -> None:
        if self.sync_in_progress and self._target is not None:
            logger.debug(
                "Superseding %s at %.1fs", self._target.type.value, self._target.current_time
            )
        self._step.cancel()
        self._verify.cancel()

        settings = self.adaptive_settings()
        if self._constrained and self._player.paused and target.wants_play:
            settings = replace(
                settings,
                max_retries=1,
                tolerance=max(settings.tolerance, CONSTRAINED_UNPAUSE_MIN_TOLERANCE_S),
            )
        self._target = target
        self._settings = settings
        self._attempts = 0
        self._attempt()

    def _attempt(self) -> None:
        target = self._target
        assert target is not None
        self._attempts += 1
        self._state = EngineState.APPLYING
        self._applied_at = None
        jump = abs(target.current_time - self._player.current_time)
        logger.info(
            "Sync attempt %d/%d: %s at %.1fs (%s)",
            self._attempts,
            self._settings.max_retries,
            target.type.value,
            target.current_time,
            self._classifier.quality.value,
        )

        if self._constrained:
            self._step.schedule(CONSTRAINED_APPLY_STEP_S, lambda: self._apply_changes(target))
        else:
            self._apply_changes(target)

        verify_delay = self._verification_delay(jump)
        if jump > LARGE_SEEK_S:
            logger.info(
                "Large seek: %.1fs -> %.1fs (jump: %.1fs, verify after %dms)",
                self._player.current_time,
                target.current_time,
                jump,
                round(verify_delay * 1000),
            )
        self._verify.schedule(verify_delay, self._verify_attempt)

    def _verification_delay(self, jump: float) -> float:
        if jump > HUGE_SEEK_S:
            return 2.0 if self._constrained else 1.5
        if jump > LARGE_SEEK_S:
            return 1.5 if self._constrained else 1.0
        return CONSTRAINED_VERIFY_DELAY_S if self._constrained else VERIFY_DELAY_S

    def _apply_changes(self, target: SyncTarget) -> None:
        player = self._player
        # Repositioning inside tolerance would only produce a visible hiccup.
        needs_seek = abs(player.current_time - target.current_time) > self._settings.tolerance
        unpause = player.paused and target.wants_play

        if self._constrained and unpause and needs_seek:
            # Two-step unpause: land just before the target, let the pipeline
            # settle, then fine-seek and play.
            player.current_time = max(target.current_time - UNPAUSE_PREPOSITION_S, 0.0)
            self._step.schedule(UNPAUSE_SETTLE_S, lambda: self._finish_unpause(target))
            return

        if needs_seek:
            player.current_time = target.current_time
        if target.wants_play:
            self._play(target)
        elif target.wants_pause:
            player.pause()
        self._mark_applied()

    def _finish_unpause(self, target: SyncTarget) -> None:
        self._player.current_time = target.current_time
        self._play(target)
        self._mark_applied()

    def _mark_applied(self) -> None:
        self._applied_at = self._scheduler.time()
        self._state = EngineState.VERIFYING

    def _play(self, target: SyncTarget) -> None:
        try:
            self._player.play()
        except PlaybackNotAllowedError:
            logger.warning("Playback requires user interaction before it can start")
            if self._on_gesture_required is not None:
                self._on_gesture_required(target)

    def _verify_attempt(self) -> None:
        target = self._target
        assert target is not None
        settings = self._settings
        position = self._player.current_time
        expected = target.current_time
        if self._applied_at is not None and not self._player.paused and not target.wants_pause:
            expected += self._scheduler.time() - self._applied_at
        drift = abs(position - expected)

        if drift > settings.tolerance and self._attempts < settings.max_retries:
            logger.info(
                "Sync failed (drift: %.1fs > %.1fs), retrying...", drift, settings.tolerance
            )
            self._attempt()
            return

        success = drift <= settings.tolerance
        if success:
            logger.info("Sync successful (drift: %.1fs)", drift)
            self._consecutive_give_ups = 0
        else:
            self._consecutive_give_ups += 1
            logger.warning(
                "Sync gave up after %d attempts (final drift: %.1fs)", self._attempts, drift
            )
            if (
                self._consecutive_give_ups >= MAX_CONSECUTIVE_GIVE_UPS
                and not self.emergency_bypass_active
            ):
                self._start_bypass()

        self._state = EngineState.IDLE
        self._target = None
        self._last_concluded_at = self._scheduler.time()
        if self._on_outcome is not None:
            self._on_outcome(
                SyncOutcome(
                    target=target,
                    success=success,
                    position=position,
                    drift=drift,
                    attempts=self._attempts,
                )
            )

    # ------------------------------------------------------------------
    # Emergency bypass
    # ------------------------------------------------------------------
    def _start_bypass(self) -> None:
        logger.warning(
            "Emergency bypass: %d corrections failed in a row, suspending corrections "
            "and seek blocking for %.0fs",
            self._consecutive_give_ups,
            EMERGENCY_BYPASS_S,
        )
        self._bypass.schedule(EMERGENCY_BYPASS_S, self._end_bypass)

    def _end_bypass(self) -> None:
        self._consecutive_give_ups = 0
        logger.info("Emergency bypass ended, corrections and seek blocking re-enabled")
        if self._parked is not None and self._ready:
            target = self._parked
            self._parked = None
            self.apply(target)
