"""Tests for the server glue: joins, leader fan-out and late joiners."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from aiomovienight.config import SessionConfig
from aiomovienight.models.core import (
    JoinPayload,
    LeaderDeniedMessage,
    LeaderGrantedMessage,
    LeaderStatusMessage,
)
from aiomovienight.models.follower import FollowerStatusPayload, SyncAckPayload
from aiomovienight.models.leader import (
    LeaderControlPayload,
    LeaderFullStatePayload,
    LeaderHeartbeatPayload,
)
from aiomovienight.models.sync import (
    SyncControlMessage,
    SyncFullStateMessage,
    SyncHeartbeatMessage,
    SyncStateMessage,
)
from aiomovienight.models.types import CommandType, LeaderDenyReason, NetworkQuality
from aiomovienight.server import (
    LeaderChangedEvent,
    MovieNightEvent,
    MovieNightServer,
    ViewerJoinedEvent,
    ViewerLeftEvent,
)

from .conftest import FakeConnection, FakeScheduler

MakeConnection = Callable[..., FakeConnection]


@pytest.fixture
async def server(scheduler: FakeScheduler) -> MovieNightServer:
    config = SessionConfig(
        slug="movie",
        video_formats={"mp4": "https://example.invalid/movie.mp4"},
        admin_password="popcorn",
    )
    return MovieNightServer(asyncio.get_running_loop(), config, scheduler=scheduler)


def join(
    server: MovieNightServer,
    connection: FakeConnection,
    *,
    leader: bool = False,
    password: str | None = None,
) -> None:
    server.handle_join(
        connection,
        JoinPayload(
            client_id=connection.client_id,
            name=connection.name,
            is_leader=leader,
            password=password,
        ),
    )


@pytest.fixture
def leader(server: MovieNightServer, make_connection: MakeConnection) -> FakeConnection:
    connection = make_connection(name="Leader")
    join(server, connection, leader=True, password="popcorn")
    return connection


async def test_leader_join_is_granted(
    server: MovieNightServer, leader: FakeConnection
) -> None:
    assert leader.sent_of(LeaderGrantedMessage)
    status = leader.sent_of(LeaderStatusMessage)[-1]
    assert status.payload.has_leader
    assert server.arbiter.is_leader(leader)


async def test_second_leader_is_denied(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    rival = make_connection(name="Rival")
    join(server, rival, leader=True, password="popcorn")
    (denied,) = rival.sent_of(LeaderDeniedMessage)
    assert denied.payload.reason is LeaderDenyReason.LEADER_ACTIVE
    assert denied.payload.leader is not None
    assert denied.payload.leader.name == "Leader"


async def test_wrong_password_is_denied(
    server: MovieNightServer, make_connection: MakeConnection
) -> None:
    viewer = make_connection()
    join(server, viewer, leader=True, password="nachos")
    (denied,) = viewer.sent_of(LeaderDeniedMessage)
    assert denied.payload.reason is LeaderDenyReason.INCORRECT_PASSWORD
    assert not server.arbiter.has_leader


async def test_late_joiner_gets_extrapolated_state(
    server: MovieNightServer,
    scheduler: FakeScheduler,
    leader: FakeConnection,
    make_connection: MakeConnection,
) -> None:
    server.handle_leader_full_state(leader, LeaderFullStatePayload(10.0, True))
    scheduler.advance(5.0)
    follower = make_connection()
    join(server, follower)
    assert not follower.sent_of(SyncStateMessage)

    scheduler.advance(1.0)
    (state,) = follower.sent_of(SyncStateMessage)
    assert state.payload.type is CommandType.PLAY
    assert state.payload.is_playing
    assert state.payload.current_time == pytest.approx(15.0)


async def test_no_late_join_without_leader(
    server: MovieNightServer, scheduler: FakeScheduler, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    join(server, follower)
    scheduler.advance(2.0)
    assert not follower.sent_of(SyncStateMessage)


async def test_leader_control_fans_out(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    followers = [make_connection(), make_connection()]
    for follower in followers:
        join(server, follower)
    server.handle_leader_control(leader, LeaderControlPayload(CommandType.PAUSE, 42.0))

    assert not server.session.is_playing
    assert server.session.current_position() == pytest.approx(42.0)
    assert not leader.sent_of(SyncControlMessage)
    for follower in followers:
        (control,) = follower.sent_of(SyncControlMessage)
        assert control.payload.type is CommandType.PAUSE
        assert control.payload.is_playing is False


async def test_seek_keeps_play_state(
    server: MovieNightServer, leader: FakeConnection
) -> None:
    server.handle_leader_control(leader, LeaderControlPayload(CommandType.PLAY, 0.0))
    server.handle_leader_control(leader, LeaderControlPayload(CommandType.SEEK, 120.0))
    assert server.session.is_playing


async def test_non_leader_messages_are_ignored(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    join(server, follower)
    server.handle_leader_control(follower, LeaderControlPayload(CommandType.SEEK, 500.0))
    server.handle_leader_heartbeat(follower, LeaderHeartbeatPayload(500.0))
    assert server.session.current_position() == pytest.approx(0.0)
    assert not leader.sent_of(SyncControlMessage)


async def test_heartbeat_and_full_state_are_relayed(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    join(server, follower)
    server.handle_leader_heartbeat(leader, LeaderHeartbeatPayload(30.0))
    server.handle_leader_full_state(leader, LeaderFullStatePayload(31.0, False))
    assert follower.sent_of(SyncHeartbeatMessage)[0].payload.current_time == 30.0
    assert follower.sent_of(SyncFullStateMessage)[0].payload.is_playing is False
    assert not leader.sent_of(SyncHeartbeatMessage)
    assert not server.session.is_playing


async def test_follower_ack_and_status_are_routed(
    server: MovieNightServer,
    scheduler: FakeScheduler,
    leader: FakeConnection,
    make_connection: MakeConnection,
) -> None:
    follower = make_connection()
    join(server, follower)
    server.handle_leader_control(leader, LeaderControlPayload(CommandType.PLAY, 5.0))
    command_id = follower.sent_of(SyncControlMessage)[-1].payload.command_id
    server.handle_ack(follower, SyncAckPayload(command_id, False, 0.0))
    scheduler.advance(1.0)
    assert follower.sent_of(SyncControlMessage)[-1].payload.command_id == f"{command_id}-retry"

    server.handle_follower_status(
        follower, FollowerStatusPayload(6.0, True, False, NetworkQuality.GOOD)
    )
    assert server.monitor.report(follower) is not None


async def test_leader_disconnect_frees_slot(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    follower = make_connection()
    join(server, follower)
    leader.connected = False
    server.handle_disconnect(leader)
    assert not server.arbiter.has_leader
    assert not follower.sent_of(LeaderStatusMessage)[-1].payload.has_leader

    successor = make_connection()
    join(server, successor, leader=True, password="popcorn")
    assert successor.sent_of(LeaderGrantedMessage)


async def test_events_are_signalled(
    server: MovieNightServer, make_connection: MakeConnection
) -> None:
    events: list[MovieNightEvent] = []

    async def _record(event: MovieNightEvent) -> None:
        events.append(event)

    server.add_event_listener(_record)
    viewer = make_connection(client_id="viewer-1", name="Viewer")
    join(server, viewer, leader=True, password="popcorn")
    viewer.connected = False
    server.handle_disconnect(viewer)
    await asyncio.sleep(0)

    assert ViewerJoinedEvent("viewer-1", "Viewer") in events
    assert LeaderChangedEvent(has_leader=True) in events
    assert LeaderChangedEvent(has_leader=False) in events
    assert ViewerLeftEvent("viewer-1", "Viewer") in events


async def test_status_snapshot(
    server: MovieNightServer, leader: FakeConnection, make_connection: MakeConnection
) -> None:
    follower = make_connection(name="Follower")
    join(server, follower)
    server.handle_leader_control(leader, LeaderControlPayload(CommandType.PAUSE, 42.0))
    snapshot = server.status_snapshot()

    assert snapshot["slug"] == "movie"
    assert snapshot["state"] == {"current_time": 42.0, "is_playing": False}
    assert snapshot["leader"]["name"] == "Leader"
    roles = {viewer["name"]: viewer["role"] for viewer in snapshot["viewers"]}
    assert roles == {"Leader": "leader", "Follower": "follower"}
    assert snapshot["summary"]["never_reported"] == 1

