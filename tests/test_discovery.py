"""Tests for mDNS session discovery bookkeeping."""

from __future__ import annotations

import asyncio

import pytest

from aiomovienight.discovery import (
    DiscoveredSession,
    ServiceDiscovery,
    _SessionBrowser,
    build_service_url,
)


class TestBuildServiceUrl:
    def test_uses_advertised_path(self) -> None:
        url = build_service_url("192.168.1.20", 8930, {b"path": b"/movienight"})
        assert url == "ws://192.168.1.20:8930/movienight"

    def test_missing_path_falls_back_to_default(self) -> None:
        assert build_service_url("10.0.0.2", 8930, {}) == "ws://10.0.0.2:8930/movienight"
        assert build_service_url("10.0.0.2", 8930, {b"path": None}).endswith("/movienight")

    def test_relative_path_gets_leading_slash(self) -> None:
        assert build_service_url("10.0.0.2", 80, {b"path": b"ws"}) == "ws://10.0.0.2:80/ws"

    def test_ipv6_host_is_bracketed(self) -> None:
        assert build_service_url("fe80::1", 8930, {}) == "ws://[fe80::1]:8930/movienight"


def _discovery_with_browser(slug: str | None) -> tuple[ServiceDiscovery, _SessionBrowser]:
    discovery = ServiceDiscovery(slug)
    browser = _SessionBrowser(asyncio.get_running_loop(), slug)
    discovery._browser = browser
    return discovery, browser


async def test_current_url_follows_advertisements() -> None:
    discovery, browser = _discovery_with_browser(None)
    assert discovery.current_url() is None

    browser.record(DiscoveredSession("friday._movienight._tcp.local.", "friday", "ws://a:1/m"))
    assert discovery.current_url() == "ws://a:1/m"

    browser.forget("friday._movienight._tcp.local.")
    assert discovery.current_url() is None
    assert discovery.sessions == []


async def test_slug_filter_ignores_other_sessions() -> None:
    discovery, browser = _discovery_with_browser("friday")
    browser.record(DiscoveredSession("other._movienight._tcp.local.", "other", "ws://b:1/m"))
    assert discovery.current_url() is None

    browser.record(DiscoveredSession("friday._movienight._tcp.local.", "friday", "ws://a:1/m"))
    assert [s.slug for s in discovery.sessions] == ["friday"]


async def test_wait_for_server_returns_once_advertised() -> None:
    discovery, browser = _discovery_with_browser(None)
    waiter = asyncio.create_task(discovery.wait_for_server())
    await asyncio.sleep(0)
    assert not waiter.done()

    browser.record(DiscoveredSession("friday._movienight._tcp.local.", "friday", "ws://a:1/m"))
    assert await asyncio.wait_for(waiter, timeout=1) == "ws://a:1/m"


async def test_wait_for_server_requires_start() -> None:
    with pytest.raises(RuntimeError):
        await ServiceDiscovery().wait_for_server()


async def test_forgetting_unknown_service_does_not_signal() -> None:
    _, browser = _discovery_with_browser(None)
    browser.forget("ghost._movienight._tcp.local.")
    assert not browser.changed.is_set()
