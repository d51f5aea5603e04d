"""Tests for reverting follower-initiated playback changes."""

from __future__ import annotations

import pytest

from aiomovienight.client.interaction import InteractionGuard
from aiomovienight.client.player import PlayerEvent, SimulatedPlayer

from .conftest import FakeScheduler


class Harness:
    """Player plus guard wired the way the client wires them."""

    def __init__(self, scheduler: FakeScheduler) -> None:
        self.scheduler = scheduler
        self.protocol_active = False
        self.bypass = False
        self.player = SimulatedPlayer(scheduler)
        self.player.load()
        self.guard = InteractionGuard(
            self.player,
            scheduler,
            is_protocol_active=lambda: self.protocol_active,
            bypass_active=lambda: self.bypass,
        )
        self.player.add_event_listener(self._route)

    def _route(self, event: PlayerEvent) -> None:
        match event:
            case PlayerEvent.PLAY | PlayerEvent.PAUSE:
                self.guard.on_play_pause()
            case PlayerEvent.SEEKING:
                self.guard.on_seeking()
            case PlayerEvent.TIME_UPDATE:
                self.guard.on_time_update()

    def settle(self, position: float, playing: bool) -> None:
        """Put the player in a state as the engine would, then record it."""
        self.protocol_active = True
        self.player.current_time = position
        if playing:
            self.player.play()
        else:
            self.player.pause()
        self.protocol_active = False
        self.guard.remember(position, playing)


@pytest.fixture
def harness(scheduler: FakeScheduler) -> Harness:
    return Harness(scheduler)


def test_local_pause_is_reverted(harness: Harness) -> None:
    harness.settle(50.0, playing=True)
    harness.player.pause()
    assert harness.guard.revert_pending
    harness.scheduler.advance(0.01)
    assert not harness.player.paused
    assert harness.player.current_time == pytest.approx(50.0, abs=0.05)


def test_local_play_is_reverted(harness: Harness) -> None:
    harness.settle(12.0, playing=False)
    harness.player.play()
    harness.scheduler.advance(0.01)
    assert harness.player.paused
    assert harness.player.current_time == pytest.approx(12.0)


def test_local_seek_is_reverted(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    harness.player.current_time = 80.0
    harness.scheduler.advance(0.02)
    assert harness.player.current_time == pytest.approx(20.0)


def test_changes_during_correction_are_not_reverted(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    harness.protocol_active = True
    harness.player.current_time = 80.0
    harness.player.play()
    harness.protocol_active = False
    assert not harness.guard.revert_pending
    harness.scheduler.advance(0.1)
    assert not harness.player.paused


def test_engine_bypass_lets_everything_through(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    harness.bypass = True
    harness.player.current_time = 80.0
    harness.scheduler.advance(0.1)
    assert harness.player.current_time == pytest.approx(80.0)


def test_extreme_seek_is_allowed(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    harness.player.current_time = 500.0
    harness.scheduler.advance(0.1)
    assert harness.player.current_time == pytest.approx(500.0)


def test_seek_inside_cooldown_is_not_reverted(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    harness.player.current_time = 80.0
    harness.scheduler.advance(0.05)
    assert harness.player.current_time == pytest.approx(20.0)
    harness.player.current_time = 90.0
    harness.scheduler.advance(0.05)
    assert harness.player.current_time == pytest.approx(90.0)


def test_burst_of_seeks_enables_frequency_bypass(harness: Harness) -> None:
    harness.settle(20.0, playing=False)
    for attempt in range(10):
        harness.player.current_time = 30.0 + attempt
        harness.scheduler.advance(0.2)
    assert harness.guard.frequency_bypass_active
    harness.player.current_time = 99.0
    harness.scheduler.advance(0.2)
    assert harness.player.current_time == pytest.approx(99.0)

    harness.scheduler.advance(10.0)
    assert not harness.guard.frequency_bypass_active
    harness.player.current_time = 77.0
    harness.scheduler.advance(0.02)
    assert harness.player.current_time == pytest.approx(20.0)


def test_time_updates_track_legitimate_playback(harness: Harness) -> None:
    harness.settle(10.0, playing=True)
    harness.scheduler.advance(3.0)
    harness.player.tick()
    assert harness.guard.last_valid_time == pytest.approx(13.0)
    assert harness.guard.was_playing
