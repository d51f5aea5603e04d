"""Tests for leader slot arbitration."""

from __future__ import annotations

from collections.abc import Callable

from aiomovienight.models.types import LeaderDenyReason
from aiomovienight.server.leader import LeaderArbiter

from .conftest import FakeConnection

MakeConnection = Callable[..., FakeConnection]


def test_first_request_is_granted(make_connection: MakeConnection) -> None:
    changes: list[bool] = []
    arbiter = LeaderArbiter(on_change=changes.append)
    alice = make_connection(name="Alice")
    assert arbiter.request_leader(alice).granted
    assert arbiter.leader is alice
    assert changes == [True]


def test_single_leader_while_holder_is_live(make_connection: MakeConnection) -> None:
    arbiter = LeaderArbiter()
    alice = make_connection(name="Alice", client_id="alice")
    bob = make_connection(name="Bob")
    arbiter.request_leader(alice)

    decision = arbiter.request_leader(bob)
    assert not decision.granted
    assert decision.reason is LeaderDenyReason.LEADER_ACTIVE
    assert decision.leader is not None
    assert decision.leader.client_id == "alice"
    assert decision.leader.name == "Alice"
    assert arbiter.is_leader(alice)
    assert not arbiter.is_leader(bob)


def test_repeat_request_by_holder_is_granted(make_connection: MakeConnection) -> None:
    changes: list[bool] = []
    arbiter = LeaderArbiter(on_change=changes.append)
    alice = make_connection()
    arbiter.request_leader(alice)
    assert arbiter.request_leader(alice).granted
    assert changes == [True]


def test_slot_reassigned_after_release(make_connection: MakeConnection) -> None:
    changes: list[bool] = []
    arbiter = LeaderArbiter(on_change=changes.append)
    alice = make_connection()
    bob = make_connection()
    arbiter.request_leader(alice)
    alice.connected = False
    assert arbiter.release(alice)
    assert not arbiter.has_leader
    assert arbiter.request_leader(bob).granted
    assert changes == [True, False, True]


def test_stale_holder_is_evicted(make_connection: MakeConnection) -> None:
    arbiter = LeaderArbiter()
    alice = make_connection()
    bob = make_connection()
    arbiter.request_leader(alice)
    alice.connected = False
    assert not arbiter.has_leader
    assert arbiter.request_leader(bob).granted
    assert arbiter.leader is bob


def test_release_by_non_holder_is_ignored(make_connection: MakeConnection) -> None:
    arbiter = LeaderArbiter()
    alice = make_connection()
    arbiter.request_leader(alice)
    assert not arbiter.release(make_connection())
    assert arbiter.leader is alice


class TestPassword:
    def test_missing_password(self, make_connection: MakeConnection) -> None:
        arbiter = LeaderArbiter(password="popcorn")
        decision = arbiter.request_leader(make_connection())
        assert decision.reason is LeaderDenyReason.PASSWORD_REQUIRED

    def test_wrong_password(self, make_connection: MakeConnection) -> None:
        arbiter = LeaderArbiter(password="popcorn")
        decision = arbiter.request_leader(make_connection(), "nachos")
        assert decision.reason is LeaderDenyReason.INCORRECT_PASSWORD

    def test_password_checked_before_slot(self, make_connection: MakeConnection) -> None:
        arbiter = LeaderArbiter(password="popcorn")
        arbiter.request_leader(make_connection(), "popcorn")
        decision = arbiter.request_leader(make_connection(), "nachos")
        assert decision.reason is LeaderDenyReason.INCORRECT_PASSWORD

    def test_correct_password(self, make_connection: MakeConnection) -> None:
        arbiter = LeaderArbiter(password="popcorn")
        assert arbiter.request_leader(make_connection(), "popcorn").granted
