"""Clock and deferred-call primitives shared by server and client.

Every "wait N ms" in the protocol is expressed as a ``DeferredCall`` on a
``Scheduler`` rather than a sleep, so state machines can be driven by a virtual
clock in tests and pending continuations can be cancelled when a newer
transition supersedes them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    """Handle returned by ``Scheduler.call_later``."""

    def cancel(self) -> None:
        """Prevent the callback from running."""


class Scheduler(Protocol):
    """Monotonic clock plus delayed callbacks."""

    def time(self) -> float:
        """Return the current monotonic time in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""


class LoopScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind to ``loop``, or to the running loop on first use."""
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Return the event loop this scheduler runs on."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        """Return the loop's monotonic time in seconds."""
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        """Schedule ``callback`` on the loop."""
        return self.loop.call_later(max(delay, 0.0), callback)


class DeferredCall:
    """A single pending continuation that can be replaced or cancelled.

    Scheduling a new callback cancels the previous one, so at most one
    continuation per ``DeferredCall`` is ever pending.
    """

    __slots__ = ("_handle", "_scheduler")

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handle: TimerHandle | None = None

    @property
    def pending(self) -> bool:
        """Return True while a callback is scheduled and has not run yet."""
        return self._handle is not None

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        """Run ``callback`` after ``delay`` seconds, replacing any pending one."""
        self.cancel()

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = self._scheduler.call_later(delay, _fire)

    def cancel(self) -> None:
        """Cancel the pending callback, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
