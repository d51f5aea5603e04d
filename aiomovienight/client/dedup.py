"""Suppression of leader commands the transport delivered twice."""

from __future__ import annotations

import logging
from collections import deque

from aiomovienight.models import CommandType
from aiomovienight.scheduler import Scheduler

logger = logging.getLogger(__name__)

DEDUP_WINDOW_S = 5.0


class CommandDeduplicator:
    """Drop repeats of ``(type, position)`` seen within ``DEDUP_WINDOW_S``.

    Only the power-constrained profile has been observed to receive replayed
    commands, so a disabled deduplicator lets everything through.
    """

    def __init__(
        self, scheduler: Scheduler, *, enabled: bool, window: float = DEDUP_WINDOW_S
    ) -> None:
        """Remember commands for ``window`` seconds; ``enabled=False`` passes everything."""
        self._scheduler = scheduler
        self._enabled = enabled
        self._window = window
        self._recent: deque[tuple[str, float]] = deque()

    @property
    def enabled(self) -> bool:
        """Return True when duplicates are being filtered."""
        return self._enabled

    @staticmethod
    def command_key(command_type: CommandType, current_time: float) -> str:
        """Return the identity of a command, position rounded to the millisecond."""
        return f"{command_type.value}-{current_time:.3f}"

    def is_duplicate(self, command_type: CommandType, current_time: float) -> bool:
        """Return True if the command repeats one seen inside the window.

        A command that is not a duplicate is remembered.
        """
        if not self._enabled:
            return False
        now = self._scheduler.time()
        while self._recent and now - self._recent[0][1] >= self._window:
            self._recent.popleft()

        key = self.command_key(command_type, current_time)
        if any(seen == key for seen, _ in self._recent):
            logger.debug("Ignoring duplicate leader command %s", key)
            return True
        self._recent.append((key, now))
        return False
