"""Tests for buffer health and power suspension tracking."""

from __future__ import annotations

import pytest

from aiomovienight.client.buffer import (
    BufferHealthGuard,
    BufferHealthReason,
    GateVerdict,
)
from aiomovienight.client.player import SimulatedPlayer

from .conftest import FakeScheduler


@pytest.fixture
def player(scheduler: FakeScheduler) -> SimulatedPlayer:
    player = SimulatedPlayer(scheduler, buffer_ahead=30.0)
    player.load()
    return player


@pytest.fixture
def guard(player: SimulatedPlayer, scheduler: FakeScheduler) -> BufferHealthGuard:
    return BufferHealthGuard(player, scheduler)


class TestBufferHealth:
    def test_healthy_with_enough_buffer(self, guard: BufferHealthGuard) -> None:
        health = guard.health()
        assert health.healthy
        assert health.reason is BufferHealthReason.HEALTHY

    def test_no_buffer_data_is_healthy(
        self, guard: BufferHealthGuard, player: SimulatedPlayer
    ) -> None:
        player.set_buffer_ahead(None)
        health = guard.health()
        assert health.healthy
        assert health.reason is BufferHealthReason.NO_BUFFER_DATA

    def test_low_buffer(self, guard: BufferHealthGuard, player: SimulatedPlayer) -> None:
        player.set_buffer_ahead(1.0)
        assert guard.health().reason is BufferHealthReason.LOW_BUFFER

    def test_buffering_then_grace_period(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_buffering_started()
        assert guard.health().reason is BufferHealthReason.ACTIVELY_BUFFERING
        scheduler.advance(1.0)
        guard.on_buffering_ended()
        assert guard.health().reason is BufferHealthReason.GRACE_PERIOD
        scheduler.advance(2.1)
        assert guard.health().healthy


class TestSuspension:
    def test_single_signal_commits_after_half_second(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.4)
        assert not guard.suspended
        scheduler.advance(0.2)
        assert guard.suspended

    def test_burst_waits_for_debounce_window(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.2)
        guard.on_suspend_signal()
        scheduler.advance(1.0)
        assert not guard.suspended
        scheduler.advance(1.1)
        assert guard.suspended

    def test_progress_cancels_pending_suspension(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        guard.on_playback_progress()
        scheduler.advance(3.0)
        assert not guard.suspended
        assert not guard.suspension_pending

    def test_suspension_clears_itself(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.5)
        assert guard.suspended
        scheduler.advance(5.0)
        assert not guard.suspended

    @pytest.mark.parametrize(
        "recover",
        ["on_user_interaction", "on_foreground", "on_buffering_ended", "on_playback_progress"],
    )
    def test_recovery_signals_clear(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler, recover: str
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.5)
        getattr(guard, recover)()
        assert not guard.suspended


class TestGate:
    def test_proceeds_when_healthy(self, guard: BufferHealthGuard) -> None:
        assert guard.gate(1.0) is GateVerdict.PROCEED

    def test_defers_while_suspended(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.5)
        assert guard.gate(10.0) is GateVerdict.DEFER_SUSPENDED

    def test_extreme_drift_overrides_suspension(
        self, guard: BufferHealthGuard, scheduler: FakeScheduler
    ) -> None:
        guard.on_suspend_signal()
        scheduler.advance(0.5)
        assert guard.gate(16.0) is GateVerdict.PROCEED
        assert not guard.suspended

    def test_defers_on_low_buffer(
        self, guard: BufferHealthGuard, player: SimulatedPlayer
    ) -> None:
        player.set_buffer_ahead(1.0)
        assert guard.gate(9.9) is GateVerdict.DEFER_BUFFER

    def test_buffer_emergency_clears_grace_period(
        self, guard: BufferHealthGuard
    ) -> None:
        guard.on_buffering_started()
        guard.on_buffering_ended()
        assert guard.gate(10.0) is GateVerdict.PROCEED
        assert guard.last_buffer_ended_at is None
