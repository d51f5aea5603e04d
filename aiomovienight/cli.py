"""Command-line interface for running a MovieNight server or a headless viewer."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

import aioconsole
from aiohttp import ClientError

from aiomovienight.client import MovieNightClient, SimulatedPlayer
from aiomovienight.config import DEFAULT_CONFIG_PATH, REQUIRED_FORMAT_HINT, load_session_config
from aiomovienight.discovery import DEFAULT_PATH, ServiceAdvertisement, ServiceDiscovery
from aiomovienight.errors import SessionConfigError
from aiomovienight.models.core import LeaderDeniedPayload
from aiomovienight.models.types import ClientProfile
from aiomovienight.scheduler import LoopScheduler
from aiomovienight.server import (
    LeaderChangedEvent,
    MovieNightEvent,
    MovieNightServer,
    ViewerJoinedEvent,
    ViewerLeftEvent,
)
from aiomovienight.server.server import DEFAULT_PORT

logger = logging.getLogger(__name__)

TICK_INTERVAL_S = 0.25
MAX_BACKOFF_S = 300.0
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Synchronized group video playback")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the session server")
    serve.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path of the session descriptor",
    )
    serve.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on")
    serve.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not advertise the server via mDNS",
    )

    join = subparsers.add_parser("join", help="Join a session with a simulated player")
    join.add_argument(
        "--url",
        default=None,
        help="WebSocket URL of the MovieNight server. If omitted, discover via mDNS.",
    )
    join.add_argument(
        "--session",
        default=None,
        help="Only join the discovered session advertised under this slug",
    )
    join.add_argument("--name", default="MovieNight CLI", help="Friendly name for this viewer")
    join.add_argument("--id", default="movienight-cli", help="Unique identifier for this viewer")
    join.add_argument("--leader", action="store_true", help="Ask for the leader slot")
    join.add_argument("--password", default=None, help="Password for the leader slot")
    join.add_argument(
        "--profile",
        default=ClientProfile.STANDARD.value,
        choices=[profile.value for profile in ClientProfile],
        help="Timing profile of the simulated media pipeline",
    )

    for sub in (serve, join):
        sub.add_argument(
            "--log-level",
            default="INFO",
            choices=LOG_LEVELS,
            help="Logging level to use",
        )
    return parser.parse_args(argv)


# ----------------------------------------------------------------------
# serve
# ----------------------------------------------------------------------
async def _serve(args: argparse.Namespace) -> int:
    try:
        config = load_session_config(args.config)
    except SessionConfigError as err:
        logger.error("%s", err)
        _print_event(f"Expected a descriptor like: {REQUIRED_FORMAT_HINT}")
        return 1

    loop = asyncio.get_running_loop()
    server = MovieNightServer(loop, config)
    server.add_event_listener(_print_server_event)
    await server.start(args.host, args.port)

    advertisement: ServiceAdvertisement | None = None
    if not args.no_advertise:
        advertisement = ServiceAdvertisement(config.slug, args.port, DEFAULT_PATH)
        try:
            await advertisement.start()
        except OSError:
            logger.exception("mDNS advertisement failed, continuing without it")
            advertisement = None

    _print_event(f"Serving '{config.slug}' with formats: {', '.join(config.sources)}")
    _print_event("Commands: viewers(v), state, help(h), quit(q)")
    console_task = loop.create_task(_server_console(server))
    loop.add_signal_handler(signal.SIGINT, console_task.cancel)
    try:
        await console_task
    except asyncio.CancelledError:  # pragma: no cover - cancellation path
        logger.debug("Console cancelled")
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if advertisement is not None:
            await advertisement.stop()
        await server.stop()
    return 0


async def _print_server_event(event: MovieNightEvent) -> None:
    match event:
        case ViewerJoinedEvent(client_id=client_id, name=name):
            _print_event(f"+ {name} ({client_id}) joined")
        case ViewerLeftEvent(client_id=client_id, name=name):
            _print_event(f"- {name} ({client_id}) left")
        case LeaderChangedEvent(has_leader=has_leader):
            _print_event("Leader present" if has_leader else "Leader slot is free")


async def _server_console(server: MovieNightServer) -> None:
    while True:
        try:
            line = await aioconsole.ainput()
        except EOFError:
            break
        command = line.strip().lower()
        if not command:
            continue
        if command in {"quit", "exit", "q"}:
            break
        if command in {"viewers", "v"}:
            _print_viewers(server)
        elif command == "state":
            position = server.session.current_position()
            state = "playing" if server.session.is_playing else "paused"
            _print_event(f"Canonical state: {state} at {position:.1f}s")
        elif command in {"help", "h"}:
            _print_event("Commands: viewers(v), state, help(h), quit(q)")
        else:
            _print_event("Unknown command")


def _print_viewers(server: MovieNightServer) -> None:
    snapshot = server.status_snapshot()
    viewers = snapshot["viewers"]
    if not viewers:
        _print_event("No viewers connected")
        return
    for viewer in viewers:
        line = f"{viewer['name']:<20} {viewer['role']:<8} {viewer['network_quality']:<9}"
        if viewer["role"] == "follower":
            drift = viewer["drift"]
            line += f" {viewer['sync_status']:<14}"
            if drift is not None:
                line += f" drift {drift:.1f}s"
        _print_event(line)
    summary = snapshot["summary"]
    _print_event(
        f"{summary['in_sync']}/{summary['total']} followers in sync, "
        f"{summary['out_of_sync']} out of sync, {summary['buffering']} buffering, "
        f"{summary['stale'] + summary['no_data']} stale"
    )


# ----------------------------------------------------------------------
# join
# ----------------------------------------------------------------------
async def _join(args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()
    scheduler = LoopScheduler(loop)
    player = SimulatedPlayer(scheduler)
    client = MovieNightClient(
        client_id=args.id,
        client_name=args.name,
        player=player,
        request_leader=args.leader,
        password=args.password,
        profile=ClientProfile(args.profile),
        scheduler=scheduler,
    )
    client.add_role_listener(_print_role)
    client.add_denied_listener(_print_denied)

    discovery: ServiceDiscovery | None = None
    url = args.url
    if url is None:
        discovery = ServiceDiscovery(args.session)
        await discovery.start()
    try:
        if discovery is not None:
            logger.info("Waiting for mDNS discovery of MovieNight server...")
            _print_event("Searching for MovieNight server...")
            url = await discovery.wait_for_server()
            _print_event(f"Found server at {url}")

        player.load()
        _print_event("Commands: play, pause, seek <s>, status, quit")
        keyboard_task = loop.create_task(_viewer_console(client, player))
        tick_task = loop.create_task(_tick_loop(player))
        loop.add_signal_handler(signal.SIGINT, keyboard_task.cancel)
        try:
            await _connection_loop(client, url, keyboard_task, discovery)
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            logger.debug("Connection loop cancelled")
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            tick_task.cancel()
            await client.disconnect()
            client.close()
    finally:
        if discovery is not None:
            await discovery.stop()
    return 0


async def _tick_loop(player: SimulatedPlayer) -> None:
    while True:
        await asyncio.sleep(TICK_INTERVAL_S)
        player.tick()


async def _sleep_interruptible(duration: float, keyboard_task: asyncio.Task[None]) -> bool:
    """Sleep for ``duration`` unless the console quits first; return True if it did."""
    remaining = duration
    while remaining > 0 and not keyboard_task.done():
        await asyncio.sleep(min(0.5, remaining))
        remaining -= 0.5
    return keyboard_task.done()


async def _wait_for_server_reappear(
    discovery: ServiceDiscovery, keyboard_task: asyncio.Task[None]
) -> str | None:
    """Wait for the server to be advertised again; None if interrupted."""
    logger.info("Session no longer reachable, waiting for it to be advertised")
    _print_event("Waiting for the session to come back...")
    while not (new_url := discovery.current_url()) and not keyboard_task.done():  # noqa: ASYNC110
        await asyncio.sleep(1.0)
    return new_url


async def _connection_loop(
    client: MovieNightClient,
    initial_url: str,
    keyboard_task: asyncio.Task[None],
    discovery: ServiceDiscovery | None = None,
) -> None:
    """
    Keep the client joined, reconnecting after drops.

    With ``discovery`` a dropped connection waits for the server to be
    advertised again. Connection errors back off exponentially (up to 5 min)
    unless discovery reports a different URL.
    """
    url = initial_url
    error_backoff = 1.0

    while not keyboard_task.done():
        try:
            await client.connect(url)
            _print_event(f"Connected to {url}")
            error_backoff = 1.0

            while client.connected and not keyboard_task.done():  # noqa: ASYNC110
                await asyncio.sleep(0.5)
            if keyboard_task.done():
                break

            _print_event("Connection lost")
            await client.disconnect()
            if discovery is not None:
                new_url = await _wait_for_server_reappear(discovery, keyboard_task)
                if keyboard_task.done():
                    break
                if new_url:
                    url = new_url
            _print_event(f"Reconnecting to {url}...")
        except (TimeoutError, OSError, ClientError) as e:
            logger.debug(
                "Connection error (%s), retrying in %.0fs", type(e).__name__, error_backoff
            )
            _print_event(f"Connection error, retrying in {error_backoff:.0f}s...")
            if await _sleep_interruptible(error_backoff, keyboard_task):
                break
            current_url = discovery.current_url() if discovery is not None else None
            if current_url and current_url != url:
                logger.info("Session moved to %s, reconnecting now", current_url)
                url = current_url
                error_backoff = 1.0
            else:
                error_backoff = min(error_backoff * 2, MAX_BACKOFF_S)


async def _viewer_console(client: MovieNightClient, player: SimulatedPlayer) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            parts = line.strip().split()
            if not parts:
                continue
            keyword = parts[0].lower()
            if keyword in {"quit", "exit", "q"}:
                break
            if keyword == "play":
                player.play()
            elif keyword == "pause":
                player.pause()
            elif keyword == "seek":
                _handle_seek(player, parts)
            elif keyword == "status":
                _print_status(client)
            else:
                _print_event("Unknown command")
    except asyncio.CancelledError:
        logger.debug("Console closed")
        raise


def _handle_seek(player: SimulatedPlayer, parts: list[str]) -> None:
    if len(parts) != 2:
        _print_event("Usage: seek <seconds>")
        return
    try:
        position = float(parts[1])
    except ValueError:
        _print_event("Invalid position")
        return
    player.current_time = position


def _print_status(client: MovieNightClient) -> None:
    player = client.player
    role = "leader" if client.is_leader else "follower"
    state = "paused" if player.paused else "playing"
    _print_event(
        f"{role}, {state} at {player.current_time:.1f}s, "
        f"network {client.network_quality.quality.value}, sync {client.engine.state.value}"
    )
    if client.engine.emergency_bypass_active:
        _print_event("Sync paused after repeated failures")
    if client.gesture_required:
        _print_event("Playback is waiting for a user gesture")


async def _print_role(is_leader: bool) -> None:
    _print_event("You are the leader" if is_leader else "You are a follower")


async def _print_denied(payload: LeaderDeniedPayload) -> None:
    message = f"Leadership denied: {payload.reason.value}"
    if payload.leader is not None:
        message += f" (held by {payload.leader.name})"
    _print_event(message)


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Run the selected subcommand and return its exit status."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))
    if args.command == "serve":
        return await _serve(args)
    return await _join(args)


def main() -> int:
    """Run the CLI client."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
