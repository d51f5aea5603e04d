"""Player surface interface and a clock-driven simulated implementation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Protocol

from aiomovienight.errors import PlaybackNotAllowedError
from aiomovienight.scheduler import Scheduler

logger = logging.getLogger(__name__)


class ReadyState(IntEnum):
    """Ordinal readiness of a media element."""

    HAVE_NOTHING = 0
    HAVE_METADATA = 1
    HAVE_CURRENT_DATA = 2
    HAVE_FUTURE_DATA = 3
    HAVE_ENOUGH_DATA = 4


class PlayerEvent(Enum):
    """Notifications a player surface delivers to its listeners."""

    DATA_READY = "loadeddata"
    PLAY = "play"
    PAUSE = "pause"
    PLAYING = "playing"
    SEEKING = "seeking"
    SEEKED = "seeked"
    TIME_UPDATE = "timeupdate"
    WAITING = "waiting"
    """Playback stopped to buffer."""
    CAN_PLAY = "canplay"
    """Enough data arrived to resume after buffering."""
    STALLED = "stalled"
    SUSPEND = "suspend"
    """The platform suspended media loading (power management)."""
    ERROR = "error"
    USER_INTERACTION = "user-interaction"
    """The user touched or clicked the page."""
    FOREGROUND = "foreground"
    """The page returned from the background."""


class PlayerErrorCode(IntEnum):
    """Media error codes reported by the player."""

    ABORTED = 1
    NETWORK = 2
    DECODE = 3
    SRC_NOT_SUPPORTED = 4


@dataclass(slots=True)
class PlayerError:
    """Decode or network failure reported by the player."""

    code: int
    message: str = ""


PlayerEventCallback = Callable[[PlayerEvent], None]


class PlayerSurface(Protocol):
    """Media playback primitive the sync engine drives.

    ``play`` raises ``PlaybackNotAllowedError`` when the platform requires a
    user gesture before playback may start.
    """

    @property
    def current_time(self) -> float:
        """Playback position in seconds."""

    @current_time.setter
    def current_time(self, value: float) -> None:
        """Seek to ``value`` seconds."""

    @property
    def paused(self) -> bool:
        """Return True when playback is paused."""

    @property
    def ready_state(self) -> int:
        """Return the readiness ordinal (0-4)."""

    @property
    def error(self) -> PlayerError | None:
        """Return the last playback failure, if any."""

    def play(self) -> None:
        """Start playback."""

    def pause(self) -> None:
        """Pause playback."""

    def buffered_ahead(self) -> float | None:
        """Return seconds buffered past the position, or None without buffer data."""

    def add_event_listener(self, callback: PlayerEventCallback) -> Callable[[], None]:
        """Register ``callback`` for player events and return a remover."""


class SimulatedPlayer:
    """Headless player whose position advances with a scheduler clock.

    Events are delivered synchronously, the same way a browser dispatches media
    events between script turns. Used by the CLI to run a session without a
    real decoder.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        duration: float | None = None,
        buffer_ahead: float | None = 30.0,
        autoplay_allowed: bool = True,
    ) -> None:
        """Create a paused, not yet loaded player."""
        self._scheduler = scheduler
        self._duration = duration
        self._buffer_ahead = buffer_ahead
        self._autoplay_allowed = autoplay_allowed
        self._position = 0.0
        self._anchor: float | None = None
        self._ready_state = ReadyState.HAVE_NOTHING
        self._error: PlayerError | None = None
        self._listeners: list[PlayerEventCallback] = []

    # PlayerSurface

    @property
    def current_time(self) -> float:
        """Return the extrapolated playback position."""
        position = self._position
        if self._anchor is not None:
            position += self._scheduler.time() - self._anchor
        if self._duration is not None:
            position = min(position, self._duration)
        return position

    @current_time.setter
    def current_time(self, value: float) -> None:
        self._position = max(value, 0.0)
        if self._anchor is not None:
            self._anchor = self._scheduler.time()
        self._emit(PlayerEvent.SEEKING)
        self._emit(PlayerEvent.SEEKED)

    @property
    def paused(self) -> bool:
        """Return True when the clock is not advancing the position."""
        return self._anchor is None

    @property
    def ready_state(self) -> int:
        """Return the readiness ordinal."""
        return int(self._ready_state)

    @property
    def error(self) -> PlayerError | None:
        """Return the last failure set with ``fail``."""
        return self._error

    def play(self) -> None:
        """Start advancing the position."""
        if not self._autoplay_allowed:
            raise PlaybackNotAllowedError("Playback requires a user gesture")
        if self._anchor is not None:
            return
        self._anchor = self._scheduler.time()
        self._emit(PlayerEvent.PLAY)
        self._emit(PlayerEvent.PLAYING)

    def pause(self) -> None:
        """Freeze the position."""
        if self._anchor is None:
            return
        self._position = self.current_time
        self._anchor = None
        self._emit(PlayerEvent.PAUSE)

    def buffered_ahead(self) -> float | None:
        """Return the configured buffer-ahead."""
        return self._buffer_ahead

    def add_event_listener(self, callback: PlayerEventCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    # Simulation controls

    def load(self, start_time: float = 0.0) -> None:
        """Pretend the media finished loading its first frames."""
        self._position = max(start_time, 0.0)
        self._ready_state = ReadyState.HAVE_ENOUGH_DATA
        self._emit(PlayerEvent.DATA_READY)

    def tick(self) -> None:
        """Deliver a time update, as a playing element does periodically."""
        if self._anchor is not None:
            self._emit(PlayerEvent.TIME_UPDATE)

    def allow_autoplay(self) -> None:
        """Simulate the user granting a playback gesture."""
        self._autoplay_allowed = True
        self._emit(PlayerEvent.USER_INTERACTION)

    def set_buffer_ahead(self, seconds: float | None) -> None:
        """Change the reported buffer-ahead."""
        self._buffer_ahead = seconds

    def start_buffering(self) -> None:
        """Simulate a stall for more data."""
        self._ready_state = ReadyState.HAVE_CURRENT_DATA
        self._emit(PlayerEvent.WAITING)

    def finish_buffering(self) -> None:
        """Simulate enough data arriving to resume."""
        self._ready_state = ReadyState.HAVE_ENOUGH_DATA
        self._emit(PlayerEvent.CAN_PLAY)

    def suspend(self) -> None:
        """Simulate a platform power-management suspend signal."""
        self._emit(PlayerEvent.SUSPEND)

    def fail(self, code: int, message: str = "") -> None:
        """Simulate a playback failure."""
        self._error = PlayerError(code=code, message=message)
        self._emit(PlayerEvent.ERROR)

    def _emit(self, event: PlayerEvent) -> None:
        for callback in list(self._listeners):
            callback(event)
