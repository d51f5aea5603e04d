"""Tests for command fan-out and acknowledgment retries."""

from __future__ import annotations

import re
from collections.abc import Callable

import pytest

from aiomovienight.models.follower import SyncAckPayload
from aiomovienight.models.sync import SyncControlMessage
from aiomovienight.models.types import CommandType
from aiomovienight.server.dispatcher import CommandDispatcher, generate_command_id

from .conftest import FakeConnection, FakeScheduler

MakeConnection = Callable[..., FakeConnection]


@pytest.fixture
def dispatcher(scheduler: FakeScheduler) -> CommandDispatcher:
    return CommandDispatcher(scheduler)


def test_command_id_format() -> None:
    assert re.fullmatch(r"\d{13}-[0-9a-z]{9}", generate_command_id())
    assert generate_command_id() != generate_command_id()


def test_dispatch_reaches_every_follower(
    dispatcher: CommandDispatcher, make_connection: MakeConnection
) -> None:
    followers = [make_connection(), make_connection()]
    command = dispatcher.dispatch(CommandType.PAUSE, 42.0, False, followers)
    for follower in followers:
        (message,) = follower.sent_of(SyncControlMessage)
        assert message.payload.command_id == command.id
        assert message.payload.type is CommandType.PAUSE
        assert message.payload.current_time == 42.0
        assert message.payload.is_playing is False
    assert dispatcher.get(command.id) is command


def test_successful_ack_needs_no_retry(
    dispatcher: CommandDispatcher, scheduler: FakeScheduler, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    command = dispatcher.dispatch(CommandType.PLAY, 10.0, True, [follower])
    dispatcher.handle_ack(follower, SyncAckPayload(command.id, True, 10.1))
    scheduler.advance(2.0)
    assert len(follower.sent_of(SyncControlMessage)) == 1
    assert command.acks == {follower.connection_id: True}


def test_failed_ack_is_retried_once(
    dispatcher: CommandDispatcher, scheduler: FakeScheduler, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    other = make_connection()
    command = dispatcher.dispatch(CommandType.SEEK, 300.0, True, [follower, other])
    dispatcher.handle_ack(follower, SyncAckPayload(command.id, False, 12.0))

    scheduler.advance(0.9)
    assert len(follower.sent_of(SyncControlMessage)) == 1
    scheduler.advance(0.2)
    retry = follower.sent_of(SyncControlMessage)[-1]
    assert retry.payload.command_id == f"{command.id}-retry"
    assert retry.payload.current_time == 300.0
    assert len(other.sent_of(SyncControlMessage)) == 1

    # The retry fails as well: recorded, not resent.
    assert dispatcher.handle_ack(follower, SyncAckPayload(retry.payload.command_id, False, 12.0))
    scheduler.advance(2.0)
    assert len(follower.sent_of(SyncControlMessage)) == 2
    assert command.acks[follower.connection_id] is False


def test_retry_skipped_for_disconnected_follower(
    dispatcher: CommandDispatcher, scheduler: FakeScheduler, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    command = dispatcher.dispatch(CommandType.PLAY, 10.0, True, [follower])
    dispatcher.handle_ack(follower, SyncAckPayload(command.id, False, 0.0))
    dispatcher.cancel_retries(follower)
    scheduler.advance(2.0)
    assert len(follower.sent) == 1


def test_unknown_ack_is_ignored(
    dispatcher: CommandDispatcher, make_connection: MakeConnection
) -> None:
    assert dispatcher.handle_ack(make_connection(), SyncAckPayload("nope", True, 0.0)) is None


def test_expired_commands_are_purged(
    dispatcher: CommandDispatcher, scheduler: FakeScheduler, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    old = dispatcher.dispatch(CommandType.PLAY, 0.0, True, [follower])
    scheduler.advance(31.0)
    fresh = dispatcher.dispatch(CommandType.PAUSE, 31.0, False, [follower])
    assert dispatcher.get(old.id) is None
    assert dispatcher.get(fresh.id) is fresh
    assert len(dispatcher) == 1
    assert dispatcher.handle_ack(follower, SyncAckPayload(old.id, False, 0.0)) is None
