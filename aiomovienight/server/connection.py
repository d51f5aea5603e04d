"""Represents a single websocket connected to the MovieNight server."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMessage, WSMsgType, web

from aiomovienight.models.core import (
    JoinMessage,
    JoinPayload,
    PingClientMessage,
    PingPayload,
    PingServerMessage,
    PongClientMessage,
    PongPayload,
    PongServerMessage,
)
from aiomovienight.models.follower import FollowerStatusMessage, SyncAckMessage
from aiomovienight.models.leader import (
    LeaderControlMessage,
    LeaderFullStateMessage,
    LeaderHeartbeatMessage,
)
from aiomovienight.models.types import ClientMessage, ClientProfile, ServerMessage
from aiomovienight.network_quality import NetworkQualityClassifier

MAX_PENDING_MSG = 512
HANDSHAKE_TIMEOUT_S = 10

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .server import MovieNightServer


class Connection:
    """
    A websocket connected to a MovieNightServer.

    The connection becomes part of the session once it sent session/join;
    until then every other message is rejected.
    """

    _server: MovieNightServer
    _request: web.Request
    _wsock: web.WebSocketResponse
    _info: JoinPayload | None = None
    _writer_task: asyncio.Task[None] | None = None
    """Drains ``_to_write`` into the websocket."""
    _to_write: asyncio.Queue[ServerMessage]
    """Outgoing messages, bounded so a stuck client cannot grow memory."""
    _closing: bool = False

    def __init__(self, server: MovieNightServer, request: web.Request) -> None:
        """
        Created by MovieNightServer.on_client_connect for each websocket request.
        """
        self._server = server
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self.connection_id = uuid.uuid4().hex
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._classifier = NetworkQualityClassifier()
        self._connected_at = server.scheduler.time()
        self._logger = logger.getChild(f"unknown-{request.remote}")
        self._logger.debug("Connection initialized")

    @property
    def connected(self) -> bool:
        """Return True while the websocket is open."""
        return not self._closing and not self._wsock.closed

    @property
    def joined(self) -> bool:
        """Return True once session/join was received."""
        return self._info is not None

    @property
    def client_id(self) -> str:
        """The identifier the client sent on join."""
        assert self._info  # Connection should be joined by now
        return self._info.client_id

    @property
    def name(self) -> str:
        """The human-readable name of the client."""
        if self._info is None:
            return f"unknown-{self._request.remote}"
        return self._info.name

    @property
    def info(self) -> JoinPayload:
        """The join payload of this connection."""
        assert self._info  # Connection should be joined by now
        return self._info

    @property
    def profile(self) -> ClientProfile:
        """Timing profile of the client's media pipeline."""
        if self._info is not None and self._info.client_profile is not None:
            return self._info.client_profile
        return ClientProfile.from_user_agent(self._request.headers.get("User-Agent", ""))

    @property
    def classifier(self) -> NetworkQualityClassifier:
        """RTT classifier fed from the client's reported round-trip times."""
        return self._classifier

    @property
    def connected_at(self) -> float:
        """Server monotonic time the websocket was accepted."""
        return self._connected_at

    async def handle_client(self) -> web.WebSocketResponse:
        """
        Run the websocket until either side closes it.
        """
        try:
            async with asyncio.timeout(HANDSHAKE_TIMEOUT_S):
                _ = await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Websocket handshake timed out")
            return self._wsock

        self._logger.info("Websocket open")
        self._writer_task = self._server.loop.create_task(self._writer())
        try:
            await self._run_message_loop()
        finally:
            await self.disconnect()
        return self._wsock

    async def _run_message_loop(self) -> None:
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not self._wsock.closed:
                # A finished writer means the socket is gone.
                receive_task = self._server.loop.create_task(self._wsock.receive())
                assert self._writer_task is not None
                done, pending = await asyncio.wait(
                    [receive_task, self._writer_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if self._writer_task in done:
                    self._logger.debug("Writer stopped, leaving message loop")
                    if receive_task in pending:
                        _ = receive_task.cancel()
                    break

                try:
                    msg = await receive_task
                except (ConnectionError, asyncio.CancelledError, TimeoutError) as e:
                    self._logger.error("Receive failed: %s", e)
                    break

                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    self._handle_message(ClientMessage.from_json(cast("str", msg.data)))
                except Exception:
                    self._logger.exception("Rejected message %s", msg.data)
            self._logger.debug("Websocket closed")

        except asyncio.CancelledError:
            self._logger.debug("Message loop cancelled")
        except Exception:
            self._logger.exception("Message loop crashed")
        finally:
            if receive_task and not receive_task.done():
                _ = receive_task.cancel()

    async def disconnect(self) -> None:
        """Close the websocket and leave the session."""
        if self._closing:
            return
        self._closing = True
        self._logger.debug("Closing connection")

        if self._writer_task and not self._writer_task.done():
            _ = self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task

        if not self._wsock.closed:
            _ = await self._wsock.close()

        if self._info is not None:
            self._server.handle_disconnect(self)
        self._logger.info("%s left", self.name)

    def _handle_message(self, message: ClientMessage) -> None:
        """Handle incoming messages from the client."""
        if self._info is None and not isinstance(message, (JoinMessage, PingClientMessage)):
            raise ValueError("First message must be session/join")
        server = self._server
        match message:
            case JoinMessage(payload):
                first_join = self._info is None
                self._info = payload
                if first_join:
                    self._logger = logger.getChild(payload.client_id)
                    self._classifier = NetworkQualityClassifier(
                        constrained=self.profile is ClientProfile.POWER_CONSTRAINED
                    )
                self._logger.info(
                    "Received session/join (leader requested: %s)", payload.is_leader
                )
                server.handle_join(self, payload)
            case PingClientMessage(payload):
                self.send_message(
                    PongServerMessage(payload=PongPayload(timestamp=payload.timestamp))
                )
                if payload.rtt_ms is not None:
                    self._classifier.add_sample(payload.rtt_ms)
            case PongClientMessage(payload):
                self._classifier.add_sample(max(self._now_ms() - payload.timestamp, 0))
            case LeaderControlMessage(payload):
                server.handle_leader_control(self, payload)
            case LeaderHeartbeatMessage(payload):
                server.handle_leader_heartbeat(self, payload)
            case LeaderFullStateMessage(payload):
                server.handle_leader_full_state(self, payload)
            case FollowerStatusMessage(payload):
                server.handle_follower_status(self, payload)
            case SyncAckMessage(payload):
                server.handle_ack(self, payload)

    async def _writer(self) -> None:
        """Send queued messages until the socket closes."""
        try:
            while not self._wsock.closed and not self._closing:
                message = await self._to_write.get()
                try:
                    await self._wsock.send_str(message.to_json())
                except ConnectionError:
                    self._logger.warning("Send failed, stopping writer")
                    break
            self._logger.debug("Writer finished")
        except Exception:
            self._logger.exception("Writer crashed")

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message to be sent to the client."""
        if self._to_write.full():
            self._logger.warning("Send queue full, dropping %s", type(message).__name__)
            return
        if not isinstance(message, (PingServerMessage, PongServerMessage)):
            self._logger.debug("Queueing %s", type(message).__name__)
        self._to_write.put_nowait(message)

    def ping(self) -> None:
        """Send an RTT probe to the client."""
        self.send_message(PingServerMessage(payload=PingPayload(timestamp=self._now_ms())))

    def _now_ms(self) -> int:
        return int(self._server.scheduler.time() * 1000)
