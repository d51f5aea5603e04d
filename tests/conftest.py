"""Shared pytest fixtures: a virtual clock and stand-in connections."""

from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from aiomovienight.models.types import ClientProfile, ServerMessage
from aiomovienight.network_quality import NetworkQualityClassifier


class FakeTimer:
    """Handle returned by ``FakeScheduler.call_later``."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Virtual monotonic clock; callbacks only run from ``advance``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self._queue: list[tuple[float, int, FakeTimer, Callable[[], None]]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer()
        heapq.heappush(self._queue, (self.now + max(delay, 0.0), next(self._seq), timer, callback))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer, _ in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running due callbacks in order."""
        deadline = self.now + seconds
        while self._queue and self._queue[0][0] <= deadline:
            when, _, timer, callback = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = max(self.now, when)
            callback()
        self.now = deadline

    def run_all(self, limit: float = 60.0) -> None:
        """Advance until no callback is pending or ``limit`` seconds passed."""
        end = self.now + limit
        while self.pending and self.now < end:
            next_due = min(when for when, _, timer, _ in self._queue if not timer.cancelled)
            self.advance(max(next_due - self.now, 0.0))


@dataclass(eq=False)
class FakeConnection:
    """Stand-in for ``aiomovienight.server.Connection``."""

    connection_id: str
    client_id: str = ""
    name: str = ""
    connected: bool = True
    joined: bool = True
    profile: ClientProfile = ClientProfile.STANDARD
    connected_at: float = 0.0
    classifier: NetworkQualityClassifier = field(default_factory=NetworkQualityClassifier)
    sent: list[ServerMessage] = field(default_factory=list)
    pings: int = 0

    def __post_init__(self) -> None:
        self.client_id = self.client_id or f"client-{self.connection_id}"
        self.name = self.name or f"Viewer {self.connection_id}"

    def send_message(self, message: ServerMessage) -> None:
        self.sent.append(message)

    def ping(self) -> None:
        self.pings += 1

    def sent_of(self, message_type: type) -> list:
        return [message for message in self.sent if isinstance(message, message_type)]


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def make_connection() -> Callable[..., FakeConnection]:
    counter = itertools.count(1)

    def _make(**kwargs) -> FakeConnection:
        return FakeConnection(connection_id=f"conn{next(counter):04d}", **kwargs)

    return _make
