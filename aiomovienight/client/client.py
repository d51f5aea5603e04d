"""MovieNight client: keep a local player in step with the session leader."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import TracebackType
from typing import Any, Self

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiomovienight.errors import NotConnectedError
from aiomovienight.models.core import (
    JoinMessage,
    JoinPayload,
    LeaderDeniedMessage,
    LeaderDeniedPayload,
    LeaderGrantedMessage,
    LeaderStatusMessage,
    PingClientMessage,
    PingPayload,
    PingServerMessage,
    PongClientMessage,
    PongPayload,
    PongServerMessage,
)
from aiomovienight.models.follower import (
    FollowerStatusMessage,
    FollowerStatusPayload,
    SyncAckMessage,
    SyncAckPayload,
)
from aiomovienight.models.leader import (
    LeaderControlMessage,
    LeaderControlPayload,
    LeaderFullStateMessage,
    LeaderFullStatePayload,
    LeaderHeartbeatMessage,
    LeaderHeartbeatPayload,
)
from aiomovienight.models.sync import (
    SyncControlMessage,
    SyncFullStateMessage,
    SyncHeartbeatMessage,
    SyncStateMessage,
)
from aiomovienight.models.types import (
    ClientMessage,
    ClientProfile,
    CommandType,
    LeaderDenyReason,
    ServerMessage,
)
from aiomovienight.network_quality import PING_INTERVAL_S, NetworkQualityClassifier
from aiomovienight.scheduler import LoopScheduler, Scheduler

from .buffer import BufferHealthGuard
from .dedup import CommandDeduplicator
from .drift import DriftCorrectionEngine, SyncOutcome, SyncTarget
from .interaction import InteractionGuard
from .player import PlayerErrorCode, PlayerEvent, PlayerSurface, ReadyState

logger = logging.getLogger(__name__)

MAX_PENDING_MSG = 512
LEADER_HEARTBEAT_INTERVAL_S = 3.0
LEADER_FULL_STATE_INTERVAL_S = 10.0
HANDSHAKE_TIMEOUT_S = 10.0

RoleCallback = Callable[[bool], Awaitable[None] | None]
DeniedCallback = Callable[[LeaderDeniedPayload], Awaitable[None] | None]


class MovieNightClient:
    """Async MovieNight client driving a ``PlayerSurface``.

    As a follower the client applies leader commands through the drift
    correction engine and reverts local play/pause/seek actions. As the leader
    it forwards its own player events to the server and broadcasts periodic
    heartbeats and full state.
    """

    def __init__(
        self,
        client_id: str,
        client_name: str,
        player: PlayerSurface,
        *,
        request_leader: bool = False,
        password: str | None = None,
        start_time: float | None = None,
        profile: ClientProfile = ClientProfile.STANDARD,
        session: ClientSession | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Create a new client for ``player``.

        ``request_leader`` asks for the leader slot on join and again whenever
        the server reports that the slot became free.
        """
        self._client_id = client_id
        self._client_name = client_name
        self._player = player
        self._request_leader = request_leader
        self._password = password
        self._start_time = start_time
        self._profile = profile
        self._session = session
        self._owns_session = session is None
        self._scheduler = scheduler or LoopScheduler()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._connected = False
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._loop_tasks: list[asyncio.Task[None]] = []
        self._to_write: asyncio.Queue[ClientMessage] = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._leader_status_event: asyncio.Event | None = None

        self._is_leader = False
        self._has_leader: bool | None = None
        self._password_denied = False
        self._gesture_target: SyncTarget | None = None
        self._role_callbacks: list[RoleCallback] = []
        self._denied_callbacks: list[DeniedCallback] = []

        constrained = profile is ClientProfile.POWER_CONSTRAINED
        self._classifier = NetworkQualityClassifier(constrained=constrained)
        # Buffer and suspension gating only matters on the constrained pipeline.
        self._buffer_guard = BufferHealthGuard(player, self._scheduler) if constrained else None
        self._dedup = CommandDeduplicator(self._scheduler, enabled=constrained)
        self._engine = DriftCorrectionEngine(
            player,
            self._scheduler,
            self._classifier,
            constrained=constrained,
            buffer_guard=self._buffer_guard,
            on_outcome=self._handle_sync_outcome,
            on_gesture_required=self._handle_gesture_required,
        )
        self._guard = InteractionGuard(
            player,
            self._scheduler,
            is_protocol_active=lambda: self._engine.sync_in_progress,
            bypass_active=lambda: self._engine.emergency_bypass_active,
        )
        self._remove_player_listener = player.add_event_listener(self._handle_player_event)

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def client_id(self) -> str:
        """Return the identifier sent on join."""
        return self._client_id

    @property
    def connected(self) -> bool:
        """Return True while the session socket is open."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def is_leader(self) -> bool:
        """Return True while this client holds the leader slot."""
        return self._is_leader

    @property
    def has_leader(self) -> bool | None:
        """Return the last leader status the server reported."""
        return self._has_leader

    @property
    def profile(self) -> ClientProfile:
        """Return the timing profile this client announced."""
        return self._profile

    @property
    def player(self) -> PlayerSurface:
        """Return the player this client drives."""
        return self._player

    @property
    def engine(self) -> DriftCorrectionEngine:
        """Return the drift correction engine."""
        return self._engine

    @property
    def interaction_guard(self) -> InteractionGuard:
        """Return the guard reverting local playback changes."""
        return self._guard

    @property
    def buffer_guard(self) -> BufferHealthGuard | None:
        """Return the buffer guard, present only on the constrained profile."""
        return self._buffer_guard

    @property
    def network_quality(self) -> NetworkQualityClassifier:
        """Return the RTT classifier."""
        return self._classifier

    @property
    def gesture_required(self) -> bool:
        """Return True while playback is waiting for a user gesture."""
        return self._gesture_target is not None

    def add_role_listener(self, callback: RoleCallback) -> Callable[[], None]:
        """Register a callback invoked with the new role when leadership changes."""
        self._role_callbacks.append(callback)
        return lambda: self._role_callbacks.remove(callback)

    def add_denied_listener(self, callback: DeniedCallback) -> Callable[[], None]:
        """Register a callback invoked when a leadership request is refused."""
        self._denied_callbacks.append(callback)
        return lambda: self._denied_callbacks.remove(callback)

    async def connect(self, url: str) -> None:
        """Connect to a MovieNight server and join the session."""
        if self.connected:
            logger.debug("connect() called while already joined")
            return

        self._loop = asyncio.get_running_loop()
        if self._session is None:
            self._session = ClientSession()
        self._leader_status_event = asyncio.Event()

        logger.info("Connecting to MovieNight server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._connected = True

        self._writer_task = self._loop.create_task(self._writer())
        self._reader_task = self._loop.create_task(self._reader_loop())
        self.send_message(self._build_join())

        try:
            await asyncio.wait_for(self._leader_status_event.wait(), timeout=HANDSHAKE_TIMEOUT_S)
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for session/leader-status") from err

        self._loop_tasks = [
            self._loop.create_task(self._ping_loop()),
            self._loop.create_task(self._status_loop()),
            self._loop.create_task(self._leader_heartbeat_loop()),
            self._loop.create_task(self._leader_full_state_loop()),
        ]
        logger.info("Joined session as %s", self._client_name)

    async def disconnect(self) -> None:
        """Leave the session and close the socket."""
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop) if self._loop else None

        tasks = [*self._loop_tasks, self._writer_task, self._reader_task]
        for task in tasks:
            if task is None or task is current_task:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._loop_tasks = []
        self._writer_task = None
        self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._engine.cancel()
        while not self._to_write.empty():
            self._to_write.get_nowait()
        if self._is_leader:
            self._is_leader = False
            await self._notify_callbacks(self._role_callbacks, False)
        self._has_leader = None

    def close(self) -> None:
        """Detach from the player; the client cannot be reused afterwards."""
        self._remove_player_listener()
        self._engine.cancel()

    def send_message(self, message: ClientMessage) -> None:
        """Enqueue ``message`` for the writer task."""
        if not isinstance(message, (PingClientMessage, PongClientMessage)):
            logger.debug("Enqueueing message: %s", type(message).__name__)
        self._to_write.put_nowait(message)

    def request_leadership(self, password: str | None = None) -> None:
        """Ask the server for the leader slot."""
        if not self.connected:
            raise NotConnectedError("Client is not connected")
        self._request_leader = True
        if password is not None:
            self._password = password
            self._password_denied = False
        self.send_message(self._build_join())

    def grant_gesture(self) -> None:
        """Retry playback that was refused for lack of a user gesture."""
        target = self._gesture_target
        self._gesture_target = None
        if target is not None and not self._is_leader:
            logger.info("User gesture received, resuming playback")
            self._engine.apply(target)

    def send_follower_status(self) -> None:
        """Report the local player state to the server."""
        self.send_message(
            FollowerStatusMessage(
                payload=FollowerStatusPayload(
                    current_time=self._player.current_time,
                    is_playing=not self._player.paused,
                    buffering=self._player.ready_state < ReadyState.HAVE_FUTURE_DATA,
                    network_quality=self._classifier.quality,
                )
            )
        )

    def send_leader_heartbeat(self) -> None:
        """Send the leader position for passive drift detection."""
        self.send_message(
            LeaderHeartbeatMessage(
                payload=LeaderHeartbeatPayload(current_time=self._player.current_time)
            )
        )

    def send_leader_full_state(self) -> None:
        """Send the complete leader state."""
        self.send_message(
            LeaderFullStateMessage(
                payload=LeaderFullStatePayload(
                    current_time=self._player.current_time,
                    is_playing=not self._player.paused,
                )
            )
        )

    def send_ping(self) -> None:
        """Send an RTT probe carrying the last measured RTT."""
        self.send_message(
            PingClientMessage(
                payload=PingPayload(timestamp=self._now_ms(), rtt_ms=self._classifier.last_rtt)
            )
        )

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------
    def _build_join(self) -> JoinMessage:
        return JoinMessage(
            payload=JoinPayload(
                client_id=self._client_id,
                name=self._client_name,
                is_leader=self._request_leader,
                start_time=self._start_time,
                client_profile=self._profile,
                password=self._password if self._request_leader else None,
            )
        )

    async def _writer(self) -> None:
        assert self._ws is not None
        try:
            while not self._ws.closed:
                message = await self._to_write.get()
                try:
                    await self._ws.send_str(message.to_json())
                except ConnectionError:
                    logger.warning("Connection error sending message, ending writer task")
                    break
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
        except Exception:
            logger.exception("Reader loop failed")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            await self._handle_json_message(msg.data)
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("Server closed the session socket")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("Session socket error: %s", self._ws.exception() if self._ws else None)
            await self.disconnect()

    async def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Dropping unparseable server message: %s", data)
            return
        await self._handle_message(message)

    async def _handle_message(self, message: ServerMessage) -> None:
        match message:
            case LeaderStatusMessage(payload=payload):
                await self._handle_leader_status(payload.has_leader)
            case LeaderGrantedMessage(payload=payload):
                logger.info("Leader access granted: %s", payload.message)
                await self._set_leader(True)
            case LeaderDeniedMessage(payload=payload):
                await self._handle_leader_denied(payload)
            case SyncControlMessage(payload=payload):
                if self._is_leader:
                    return
                if self._dedup.is_duplicate(payload.type, payload.current_time):
                    return
                logger.info("Received leader control: %s", payload.type.value)
                self._engine.apply(
                    SyncTarget(
                        payload.type,
                        payload.current_time,
                        is_playing=payload.is_playing,
                        command_id=payload.command_id,
                    )
                )
            case SyncHeartbeatMessage(payload=payload):
                if not self._is_leader:
                    self._engine.on_heartbeat(payload.current_time)
            case SyncStateMessage(payload=payload):
                if not self._is_leader and not self._engine.sync_in_progress:
                    logger.info(
                        "Late joiner sync received: %s at %.1fs",
                        payload.type.value,
                        payload.current_time,
                    )
                    self._engine.apply(
                        SyncTarget(
                            payload.type, payload.current_time, is_playing=payload.is_playing
                        )
                    )
            case SyncFullStateMessage(payload=payload):
                if not self._is_leader:
                    self._engine.on_full_state(payload.current_time, payload.is_playing)
            case PingServerMessage(payload=payload):
                self.send_message(
                    PongClientMessage(payload=PongPayload(timestamp=payload.timestamp))
                )
            case PongServerMessage(payload=payload):
                self._classifier.add_sample(max(self._now_ms() - payload.timestamp, 0))
            case _:
                logger.debug("Ignoring %s", type(message).__name__)

    async def _handle_leader_status(self, has_leader: bool) -> None:
        self._has_leader = has_leader
        if self._leader_status_event is not None:
            self._leader_status_event.set()
        if self._is_leader or has_leader:
            return
        if self._request_leader and not self._password_denied:
            logger.info("Leader disconnected, attempting to claim the leader slot")
            self.send_message(self._build_join())

    async def _handle_leader_denied(self, payload: LeaderDeniedPayload) -> None:
        if payload.leader is not None:
            logger.info(
                "Leader access denied (%s), current leader: %s",
                payload.reason.value,
                payload.leader.name,
            )
        else:
            logger.info("Leader access denied: %s", payload.reason.value)
        if payload.reason in (
            LeaderDenyReason.PASSWORD_REQUIRED,
            LeaderDenyReason.INCORRECT_PASSWORD,
        ):
            self._password_denied = True
        await self._set_leader(False)
        await self._notify_callbacks(self._denied_callbacks, payload)

    async def _set_leader(self, is_leader: bool) -> None:
        if is_leader == self._is_leader:
            return
        self._is_leader = is_leader
        if is_leader:
            self._engine.cancel()
            self._gesture_target = None
        await self._notify_callbacks(self._role_callbacks, is_leader)

    async def _notify_callbacks(
        self,
        callbacks: list[Callable[[Any], Awaitable[None] | None]],
        payload: Any,
    ) -> None:
        for callback in callbacks:
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Listener %s raised", callback)

    # ------------------------------------------------------------------
    # Player and engine callbacks
    # ------------------------------------------------------------------
    def _handle_player_event(self, event: PlayerEvent) -> None:
        buffer_guard = self._buffer_guard
        match event:
            case PlayerEvent.DATA_READY:
                self._guard.remember(self._player.current_time, not self._player.paused)
                if buffer_guard is not None:
                    buffer_guard.clear_suspension("loadeddata")
                self._engine.on_ready()
            case PlayerEvent.PLAY | PlayerEvent.PAUSE:
                if self._is_leader:
                    self._send_leader_control(
                        CommandType.PLAY if event is PlayerEvent.PLAY else CommandType.PAUSE
                    )
                else:
                    self._guard.on_play_pause()
            case PlayerEvent.SEEKING:
                if not self._is_leader:
                    self._guard.on_seeking()
            case PlayerEvent.SEEKED:
                if self._is_leader:
                    self._send_leader_control(CommandType.SEEK)
            case PlayerEvent.TIME_UPDATE | PlayerEvent.PLAYING:
                if not self._is_leader and event is PlayerEvent.TIME_UPDATE:
                    self._guard.on_time_update()
                if buffer_guard is not None:
                    buffer_guard.on_playback_progress()
            case PlayerEvent.WAITING:
                if buffer_guard is not None:
                    buffer_guard.on_buffering_started()
            case PlayerEvent.CAN_PLAY:
                if buffer_guard is not None:
                    buffer_guard.on_buffering_ended()
            case PlayerEvent.STALLED:
                logger.debug("Media loading stalled")
            case PlayerEvent.SUSPEND:
                if buffer_guard is not None:
                    buffer_guard.on_suspend_signal()
            case PlayerEvent.USER_INTERACTION:
                if buffer_guard is not None:
                    buffer_guard.on_user_interaction()
                self.grant_gesture()
            case PlayerEvent.FOREGROUND:
                if buffer_guard is not None:
                    buffer_guard.on_foreground()
            case PlayerEvent.ERROR:
                self._log_player_error()

    def _log_player_error(self) -> None:
        error = self._player.error
        if error is None:
            logger.warning("Playback error (%s): unknown error", self._profile.value)
            return
        logger.warning(
            "Playback error (%s): %s (code %d)", self._profile.value, error.message, error.code
        )
        if self._profile is ClientProfile.POWER_CONSTRAINED:
            if error.code == PlayerErrorCode.DECODE:
                logger.warning("Decode error, the stream may need a different format")
            elif error.code == PlayerErrorCode.NETWORK:
                logger.warning("Network error, check the connection to the media host")

    def _send_leader_control(self, command: CommandType) -> None:
        self.send_message(
            LeaderControlMessage(
                payload=LeaderControlPayload(
                    type=command,
                    current_time=self._player.current_time,
                    is_playing=not self._player.paused,
                )
            )
        )

    def _handle_sync_outcome(self, outcome: SyncOutcome) -> None:
        self._guard.remember(outcome.position, not self._player.paused)
        if outcome.target.command_id is None:
            return
        self.send_message(
            SyncAckMessage(
                payload=SyncAckPayload(
                    command_id=outcome.target.command_id,
                    success=outcome.success,
                    current_time=outcome.position,
                )
            )
        )

    def _handle_gesture_required(self, target: SyncTarget) -> None:
        self._gesture_target = target

    # ------------------------------------------------------------------
    # Periodic loops
    # ------------------------------------------------------------------
    async def _ping_loop(self) -> None:
        try:
            while self.connected:
                self.send_ping()
                await asyncio.sleep(PING_INTERVAL_S)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass

    async def _status_loop(self) -> None:
        try:
            while self.connected:
                if not self._is_leader and self._engine.ready:
                    self.send_follower_status()
                await asyncio.sleep(self._engine.adaptive_settings().heartbeat_interval)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass

    async def _leader_heartbeat_loop(self) -> None:
        try:
            while self.connected:
                await asyncio.sleep(LEADER_HEARTBEAT_INTERVAL_S)
                if self._is_leader and not self._player.paused:
                    self.send_leader_heartbeat()
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass

    async def _leader_full_state_loop(self) -> None:
        try:
            while self.connected:
                await asyncio.sleep(LEADER_FULL_STATE_INTERVAL_S)
                if self._is_leader:
                    self.send_leader_full_state()
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass

    def _now_ms(self) -> int:
        return int(self._scheduler.time() * 1000)

    async def __aenter__(self) -> Self:
        """Return the client; connect() is still required."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Leave the session."""
        await self.disconnect()
