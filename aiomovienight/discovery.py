"""mDNS advertisement and discovery of MovieNight servers."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

if TYPE_CHECKING:
    from zeroconf import ServiceListener, Zeroconf

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_movienight._tcp.local."
DEFAULT_PATH = "/movienight"
LOOKUP_TIMEOUT_MS = 3000


def build_service_url(host: str, port: int, properties: dict[bytes, bytes | None]) -> str:
    """Return the websocket URL a session advertised with ``properties`` listens on."""
    raw = properties.get(b"path") or b""
    path = raw.decode("utf-8", "ignore") or DEFAULT_PATH
    if not path.startswith("/"):
        path = f"/{path}"
    if ":" in host:
        # IPv6 literal
        host = f"[{host}]"
    return f"ws://{host}:{port}{path}"


class ServiceAdvertisement:
    """Advertises a running MovieNight server via mDNS."""

    def __init__(self, slug: str, port: int, path: str = DEFAULT_PATH) -> None:
        """Advertise the session ``slug`` served on ``port`` under ``path``."""
        self._slug = slug
        self._port = port
        self._path = path
        self._zeroconf: AsyncZeroconf | None = None
        self._service_info: AsyncServiceInfo | None = None
        self._registered = False

    async def start(self) -> None:
        """Register the service."""
        if self._registered:
            return

        hostname = socket.gethostname()
        self._service_info = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{self._slug}.{SERVICE_TYPE}",
            port=self._port,
            properties={"path": self._path, "slug": self._slug},
            server=f"{hostname}.local.",
        )
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.All)

        try:
            await self._zeroconf.async_register_service(self._service_info)
            self._registered = True
            logger.info(
                "Advertising session %s on port %d (path: %s)", self._slug, self._port, self._path
            )
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Unregister the service and close zeroconf."""
        if self._zeroconf is None:
            return
        if self._service_info is not None and self._registered:
            try:
                await self._zeroconf.async_unregister_service(self._service_info)
            except Exception:
                logger.exception("Error unregistering service")
        await self._zeroconf.async_close()
        self._zeroconf = None
        self._service_info = None
        self._registered = False
        logger.debug("Service advertisement stopped")

    async def __aenter__(self) -> ServiceAdvertisement:
        """Start advertising."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Stop advertising."""
        await self.stop()


@dataclass(frozen=True, slots=True)
class DiscoveredSession:
    """A MovieNight server seen on the local network."""

    service_name: str
    slug: str | None
    url: str


class _SessionBrowser:
    """Zeroconf listener keeping the set of advertised sessions up to date.

    Zeroconf invokes the listener from its own thread; lookups are handed to
    the event loop and all bookkeeping happens there.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, slug: str | None) -> None:
        self._loop = loop
        self._slug = slug
        self.sessions: dict[str, DiscoveredSession] = {}
        self.changed = asyncio.Event()
        self._lookups: set[asyncio.Task[None]] = set()

    def matches(self, session: DiscoveredSession) -> bool:
        return self._slug is None or session.slug == self._slug

    def record(self, session: DiscoveredSession) -> None:
        previous = self.sessions.get(session.service_name)
        self.sessions[session.service_name] = session
        if previous != session:
            logger.debug("Session %s reachable at %s", session.slug, session.url)
            self.changed.set()

    def forget(self, service_name: str) -> None:
        if self.sessions.pop(service_name, None) is not None:
            logger.debug("Session %s no longer advertised", service_name)
            self.changed.set()

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, LOOKUP_TIMEOUT_MS):
            logger.debug("No answer resolving %s", name)
            return
        addresses = info.parsed_addresses()
        if info.port is None or not addresses:
            return
        slug_raw = info.properties.get(b"slug")
        slug = slug_raw.decode("utf-8", "ignore") if isinstance(slug_raw, bytes) else None
        url = build_service_url(addresses[0], info.port, info.properties)
        self.record(DiscoveredSession(name, slug, url))

    def _lookup(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        def _start() -> None:
            task = self._loop.create_task(self._resolve(zeroconf, service_type, name))
            self._lookups.add(task)
            task.add_done_callback(self._lookups.discard)

        self._loop.call_soon_threadsafe(_start)

    # ServiceListener interface
    def add_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        self._lookup(zeroconf, service_type, name)

    def update_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        self._lookup(zeroconf, service_type, name)

    def remove_service(self, _zeroconf: Zeroconf, _service_type: str, name: str) -> None:
        self._loop.call_soon_threadsafe(self.forget, name)


class ServiceDiscovery:
    """Browse the local network for MovieNight sessions.

    With ``slug`` set only the session advertised under that name is
    considered; otherwise any session will do.
    """

    def __init__(self, slug: str | None = None) -> None:
        self._slug = slug
        self._browser: _SessionBrowser | None = None
        self._service_browser: AsyncServiceBrowser | None = None
        self._zeroconf: AsyncZeroconf | None = None

    @property
    def sessions(self) -> list[DiscoveredSession]:
        """Return the matching sessions currently advertised."""
        if self._browser is None:
            return []
        return [s for s in self._browser.sessions.values() if self._browser.matches(s)]

    async def start(self) -> None:
        """Start browsing until stop() is called."""
        self._browser = _SessionBrowser(asyncio.get_running_loop(), self._slug)
        self._zeroconf = AsyncZeroconf()
        try:
            self._service_browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf, SERVICE_TYPE, cast("ServiceListener", self._browser)
            )
        except Exception:
            await self.stop()
            raise

    def current_url(self) -> str | None:
        """Return the URL of a matching session, or None while none is advertised."""
        sessions = self.sessions
        return sessions[0].url if sessions else None

    async def wait_for_server(self) -> str:
        """Block until a matching session is advertised and return its URL."""
        if self._browser is None:
            raise RuntimeError("Discovery not started")
        while (url := self.current_url()) is None:
            self._browser.changed.clear()
            await self._browser.changed.wait()
        return url

    async def stop(self) -> None:
        """Stop browsing and close zeroconf."""
        if self._service_browser is not None:
            await self._service_browser.async_cancel()
            self._service_browser = None
        if self._zeroconf is not None:
            await self._zeroconf.async_close()
            self._zeroconf = None
        self._browser = None
