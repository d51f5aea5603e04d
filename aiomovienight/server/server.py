"""MovieNight Server: one shared playback session over websockets."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from aiomovienight.config import SessionConfig
from aiomovienight.models.core import (
    JoinPayload,
    LeaderDeniedMessage,
    LeaderDeniedPayload,
    LeaderGrantedMessage,
    LeaderGrantedPayload,
    LeaderStatusMessage,
    LeaderStatusPayload,
)
from aiomovienight.models.follower import FollowerStatusPayload, SyncAckPayload
from aiomovienight.models.leader import (
    LeaderControlPayload,
    LeaderFullStatePayload,
    LeaderHeartbeatPayload,
)
from aiomovienight.models.sync import (
    SyncFullStateMessage,
    SyncFullStatePayload,
    SyncHeartbeatMessage,
    SyncHeartbeatPayload,
    SyncStateMessage,
    SyncStatePayload,
)
from aiomovienight.models.types import CommandType, ServerMessage
from aiomovienight.scheduler import DeferredCall, LoopScheduler, Scheduler

from .connection import Connection
from .dispatcher import CommandDispatcher
from .leader import LeaderArbiter
from .monitor import ViewerSyncMonitor
from .session import SessionAuthority

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8930
WEBSOCKET_PATH = "/movienight"
STATUS_PATH = "/status"
LATE_JOIN_DELAY_S = 1.0
MAINTENANCE_INTERVAL_S = 30.0


class MovieNightEvent:
    """Base event type used by MovieNightServer.add_event_listener()."""


@dataclass
class ViewerJoinedEvent(MovieNightEvent):
    """A client joined the session."""

    client_id: str
    name: str


@dataclass
class ViewerLeftEvent(MovieNightEvent):
    """A joined client disconnected."""

    client_id: str
    name: str


@dataclass
class LeaderChangedEvent(MovieNightEvent):
    """The leader slot was granted or cleared."""

    has_leader: bool


class MovieNightServer:
    """Session server arbitrating the leader and fanning out its commands."""

    _connections: set[Connection]
    loop: asyncio.AbstractEventLoop
    _event_cbs: list[Callable[[MovieNightEvent], Coroutine[None, None, None]]]

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: SessionConfig,
        *,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Initialize a server for the session described by ``config``."""
        self.loop = loop
        self._config = config
        self.scheduler = scheduler or LoopScheduler(loop)
        self._connections = set()
        self._event_cbs = []
        self._late_joins: dict[str, DeferredCall] = {}
        self._admitted: set[str] = set()
        self.session = SessionAuthority(self.scheduler, config.start_time)
        self.arbiter = LeaderArbiter(config.admin_password, on_change=self._on_leader_change)
        self.dispatcher = CommandDispatcher(self.scheduler)
        self.monitor = ViewerSyncMonitor(self.session, self.scheduler)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._maintenance_task: asyncio.Task[None] | None = None
        logger.debug("MovieNightServer initialized: slug=%s", config.slug)

    @property
    def config(self) -> SessionConfig:
        """Return the session descriptor."""
        return self._config

    @property
    def connections(self) -> set[Connection]:
        """Get the set of all open connections."""
        return self._connections

    @property
    def joined(self) -> list[Connection]:
        """Return connections that completed session/join."""
        return [c for c in self._connections if c.joined and c.connected]

    @property
    def followers(self) -> list[Connection]:
        """Return joined connections that do not hold the leader slot."""
        return [c for c in self.joined if not self.arbiter.is_leader(c)]

    # ------------------------------------------------------------------
    # Web application
    # ------------------------------------------------------------------
    def create_app(self) -> web.Application:
        """Return the aiohttp application serving the websocket and status routes."""
        app = web.Application()
        app.router.add_get(WEBSOCKET_PATH, self.on_client_connect)
        app.router.add_get(STATUS_PATH, self.handle_status_request)
        return app

    async def start(self, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> None:
        """Start listening and run the maintenance loop."""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        self._maintenance_task = self.loop.create_task(self._maintenance_loop())
        logger.info("MovieNight server listening on %s:%d%s", host, port, WEBSOCKET_PATH)

    async def stop(self) -> None:
        """Disconnect everyone and stop listening."""
        if self._maintenance_task is not None:
            _ = self._maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None
        for connection in list(self._connections):
            await connection.disconnect()
        for late_join in self._late_joins.values():
            late_join.cancel()
        self._late_joins.clear()
        self.dispatcher.close()
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.debug("MovieNight server stopped")

    async def on_client_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle an incoming WebSocket connection from a MovieNight client."""
        logger.debug("Incoming connection from %s", request.remote)
        connection = Connection(self, request)
        try:
            self._connections.add(connection)
            return await connection.handle_client()
        finally:
            self._connections.discard(connection)

    async def handle_status_request(self, _request: web.Request) -> web.Response:
        """Serve the diagnostic snapshot as JSON."""
        return web.json_response(self.status_snapshot())

    def status_snapshot(self) -> dict[str, Any]:
        """Return canonical state, leader and per-viewer sync status."""
        leader = self.arbiter.leader
        viewers = []
        for connection in self.joined:
            is_leader = connection is leader
            entry: dict[str, Any] = {
                "client_id": connection.client_id,
                "name": connection.name,
                "role": "leader" if is_leader else "follower",
                "profile": connection.profile.value,
                "network_quality": connection.classifier.quality.value,
                "rtt_ms": connection.classifier.last_rtt,
                "connected_for": round(self.scheduler.time() - connection.connected_at, 1),
            }
            if not is_leader:
                status = self.monitor.status(connection)
                entry["sync_status"] = status.status.value
                entry["drift"] = None if status.drift is None else round(status.drift, 2)
            viewers.append(entry)
        summary = self.monitor.summary(self.followers)
        return {
            "slug": self._config.slug,
            "state": {
                "current_time": round(self.session.current_position(), 3),
                "is_playing": self.session.is_playing,
            },
            "leader": (
                None if leader is None else {"client_id": leader.client_id, "name": leader.name}
            ),
            "viewers": viewers,
            "summary": {
                "total": summary.total,
                "in_sync": summary.in_sync,
                "out_of_sync": summary.out_of_sync,
                "buffering": summary.buffering,
                "stale": summary.stale,
                "no_data": summary.no_data,
                "never_reported": summary.never_reported,
            },
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_event_listener(
        self, callback: Callable[[MovieNightEvent], Coroutine[None, None, None]]
    ) -> Callable[[], None]:
        """Register a callback to listen for state changes of the server.

        State changes include:
        - A client joined the session
        - A joined client disconnected
        - The leader slot was granted or cleared

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: MovieNightEvent) -> None:
        for cb in self._event_cbs:
            _ = self.loop.create_task(cb(event))

    def broadcast(self, message: ServerMessage, *, exclude: Connection | None = None) -> None:
        """Send ``message`` to every joined connection except ``exclude``."""
        for connection in self.joined:
            if connection is not exclude:
                connection.send_message(message)

    def _on_leader_change(self, has_leader: bool) -> None:
        self.broadcast(LeaderStatusMessage(payload=LeaderStatusPayload(has_leader=has_leader)))
        self._signal_event(LeaderChangedEvent(has_leader=has_leader))

    # ------------------------------------------------------------------
    # Message handlers, called by Connection
    # ------------------------------------------------------------------
    def handle_join(self, connection: Connection, payload: JoinPayload) -> None:
        """Admit ``connection`` and arbitrate its leadership request."""
        self._connections.add(connection)
        if connection.connection_id not in self._admitted:
            self._admitted.add(connection.connection_id)
            logger.info("%s joined the session", connection.name)
            self._signal_event(ViewerJoinedEvent(connection.client_id, connection.name))

        if payload.is_leader:
            decision = self.arbiter.request_leader(connection, payload.password)
            if decision.granted:
                connection.send_message(LeaderGrantedMessage(payload=LeaderGrantedPayload()))
            else:
                assert decision.reason is not None
                connection.send_message(
                    LeaderDeniedMessage(
                        payload=LeaderDeniedPayload(reason=decision.reason, leader=decision.leader)
                    )
                )

        connection.send_message(
            LeaderStatusMessage(payload=LeaderStatusPayload(has_leader=self.arbiter.has_leader))
        )
        if not self.arbiter.is_leader(connection) and self.arbiter.has_leader:
            self._schedule_late_join(connection)

    def _schedule_late_join(self, connection: Connection) -> None:
        late_join = self._late_joins.get(connection.connection_id)
        if late_join is None:
            late_join = self._late_joins[connection.connection_id] = DeferredCall(self.scheduler)
        # Captured on join, delivered once the client had time to load its player.
        is_playing = self.session.is_playing
        position = self.session.current_position()

        def _send_state() -> None:
            self._late_joins.pop(connection.connection_id, None)
            if not connection.connected or self.arbiter.is_leader(connection):
                return
            connection.send_message(
                SyncStateMessage(
                    payload=SyncStatePayload(
                        type=CommandType.PLAY if is_playing else CommandType.PAUSE,
                        current_time=position,
                        is_playing=is_playing,
                    )
                )
            )
            logger.info("Late joiner sync: %s to %.1fs", connection.name, position)

        late_join.schedule(LATE_JOIN_DELAY_S, _send_state)

    def handle_leader_control(self, connection: Connection, payload: LeaderControlPayload) -> None:
        """Apply a leader play/pause/seek and fan it out to followers."""
        if not self.arbiter.is_leader(connection):
            logger.debug("Ignoring leader/control from non-leader %s", connection.name)
            return
        is_playing = payload.is_playing
        if is_playing is None:
            if payload.type is CommandType.PLAY:
                is_playing = True
            elif payload.type is CommandType.PAUSE:
                is_playing = False
            else:
                is_playing = self.session.is_playing
        self.session.apply_leader_event(payload.current_time, is_playing)
        self.dispatcher.dispatch(payload.type, payload.current_time, is_playing, self.followers)

    def handle_leader_heartbeat(
        self, connection: Connection, payload: LeaderHeartbeatPayload
    ) -> None:
        """Record a leader heartbeat and relay it to followers."""
        if not self.arbiter.is_leader(connection):
            logger.debug("Ignoring leader/heartbeat from non-leader %s", connection.name)
            return
        # Heartbeats are only sent while the leader is playing.
        self.session.apply_leader_event(payload.current_time, True)
        self.broadcast(
            SyncHeartbeatMessage(payload=SyncHeartbeatPayload(current_time=payload.current_time)),
            exclude=connection,
        )

    def handle_leader_full_state(
        self, connection: Connection, payload: LeaderFullStatePayload
    ) -> None:
        """Record the complete leader state and relay it to followers."""
        if not self.arbiter.is_leader(connection):
            logger.debug("Ignoring leader/full-state from non-leader %s", connection.name)
            return
        self.session.apply_leader_event(payload.current_time, payload.is_playing)
        self.broadcast(
            SyncFullStateMessage(
                payload=SyncFullStatePayload(
                    current_time=payload.current_time, is_playing=payload.is_playing
                )
            ),
            exclude=connection,
        )
        logger.info(
            "Leader full state broadcast: %s at %.1fs",
            "playing" if payload.is_playing else "paused",
            payload.current_time,
        )

    def handle_follower_status(
        self, connection: Connection, payload: FollowerStatusPayload
    ) -> None:
        """Feed a follower self-report to the monitor."""
        if self.arbiter.is_leader(connection):
            return
        self.monitor.on_report(connection, payload)

    def handle_ack(self, connection: Connection, payload: SyncAckPayload) -> None:
        """Record a follower acknowledgment."""
        if self.arbiter.is_leader(connection):
            return
        self.dispatcher.handle_ack(connection, payload)

    def handle_disconnect(self, connection: Connection) -> None:
        """Forget a joined connection and release its leader slot."""
        late_join = self._late_joins.pop(connection.connection_id, None)
        if late_join is not None:
            late_join.cancel()
        self.dispatcher.cancel_retries(connection)
        self.monitor.forget(connection)
        self._connections.discard(connection)
        self._admitted.discard(connection.connection_id)
        self.arbiter.release(connection)
        self._signal_event(ViewerLeftEvent(connection.client_id, connection.name))
        followers = self.followers
        logger.info(
            "Total viewers: %d (%d leader, %d followers)",
            len(self.joined),
            len(self.joined) - len(followers),
            len(followers),
        )

    async def _maintenance_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(MAINTENANCE_INTERVAL_S)
                self.dispatcher.purge_expired()
                for connection in self.joined:
                    connection.ping()
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
