"""Tests for the node agent: discovery, lifecycle and reconnect policy."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from clawnode.agent import NodeAgent
from clawnode.mdns import DiscoveredGateway


class FakeConnection:
    """Connection double whose connect() outcomes are scripted."""

    def __init__(self, results=()):
        self.results = list(results)
        self.attempts = 0
        self.connected = False
        self.last_error = ""
        self.disconnects = 0
        self._closed = asyncio.Event()

    async def connect(self) -> bool:
        self.attempts += 1
        ok = self.results.pop(0) if self.results else True
        self.connected = ok
        self.last_error = "" if ok else "refused"
        if ok:
            self._closed = asyncio.Event()
        return ok

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def agent(store, identity, registry):
    return NodeAgent(store, registry=registry, identity=identity)


# ── Status ────────────────────────────────────────────────────────


class TestStatus:
    def test_idle_snapshot(self, agent, registry, screen):
        registry.register(screen)
        status = agent.status()
        assert status["status"] == "Disconnected"
        assert status["state"] == "idle"
        assert status["last_error"] == ""
        assert status["gateway"] == "ws://gw.local:18789/?token=***"
        assert status["device_id"] == "test-device"
        assert status["display_name"] == "Python Node"
        assert {"name": "screen", "available": True} in status["capabilities"]
        assert status["uptime"] == 0.0

    def test_no_gateway(self, agent, store):
        store.update(gateway_host="")
        assert agent.status()["gateway"] == ""

    def test_reconnect_delay_only_when_enabled(self, agent, store):
        assert agent.reconnect_delay is None
        store.update(auto_reconnect=True)
        assert agent.reconnect_delay == 2


# ── Discovery ─────────────────────────────────────────────────────


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_discovered_gateway_saved(self, store, identity):
        store.update(gateway_host="", discover_gateway=True)
        conn = FakeConnection([True])
        agent = NodeAgent(store, identity=identity, connection=conn)
        found = DiscoveredGateway(host="10.0.0.5", port=18790, name="Home", tls=True)

        with patch("clawnode.agent.discover_gateway", new=AsyncMock(return_value=found)) as disc:
            assert await agent.connect() is True

        disc.assert_awaited_once()
        assert store.config.gateway_host == "10.0.0.5"
        assert store.config.gateway_port == 18790
        assert store.config.gateway_tls is True
        assert conn.attempts == 1

    @pytest.mark.asyncio
    async def test_nothing_found(self, store, identity):
        store.update(gateway_host="", discover_gateway=True)
        conn = FakeConnection([False])
        agent = NodeAgent(store, identity=identity, connection=conn)

        with patch("clawnode.agent.discover_gateway", new=AsyncMock(return_value=None)):
            assert await agent.connect() is False
        assert store.config.gateway_host == ""

    @pytest.mark.asyncio
    async def test_configured_host_skips_discovery(self, store, identity):
        store.update(discover_gateway=True)
        agent = NodeAgent(store, identity=identity, connection=FakeConnection())

        with patch("clawnode.agent.discover_gateway", new=AsyncMock()) as disc:
            await agent.connect()
        disc.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_host_without_discovery(self, agent, store):
        store.update(gateway_host="")
        assert await agent.connect() is False
        assert agent.connection.last_error == "Gateway host is not configured"


# ── Lifecycle ─────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, store):
        conn = FakeConnection([True])
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        task = asyncio.create_task(agent.run())
        await _until(lambda: agent.running and conn.attempts == 1)
        await agent.stop()
        await asyncio.wait_for(task, timeout=2)

        assert not agent.running
        assert conn.disconnects >= 1

    @pytest.mark.asyncio
    async def test_manual_mode_does_not_retry(self, store):
        conn = FakeConnection([False])
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        task = asyncio.create_task(agent.run())
        await _until(lambda: conn.attempts == 1)
        await asyncio.sleep(0.05)
        assert conn.attempts == 1
        await agent.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_backoff_until_connected(self, store):
        store.update(auto_reconnect=True)
        conn = FakeConnection([False, False, True])
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        with patch("clawnode.agent.RECONNECT_MIN_DELAY", 0.01), \
                patch("clawnode.agent.RECONNECT_MAX_DELAY", 0.02):
            agent._reconnect_delay = 0.01
            task = asyncio.create_task(agent.run())
            await _until(lambda: conn.attempts == 3 and conn.connected)
            await _until(lambda: agent.reconnect_delay == 0.01)
            await agent.stop()
            await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, store):
        store.update(auto_reconnect=True)
        conn = FakeConnection([False] * 50)
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        with patch("clawnode.agent.RECONNECT_MAX_DELAY", 0.04):
            agent._reconnect_delay = 0.01
            task = asyncio.create_task(agent.run())
            await _until(lambda: conn.attempts >= 4)
            assert agent.reconnect_delay == 0.04
            await agent.stop()
            await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, store):
        store.update(auto_reconnect=True)
        conn = FakeConnection([True, True])
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        with patch("clawnode.agent.RECONNECT_MIN_DELAY", 0.01):
            agent._reconnect_delay = 0.01
            task = asyncio.create_task(agent.run())
            await _until(lambda: conn.connected)
            conn.connected = False
            conn._closed.set()
            await _until(lambda: conn.attempts == 2 and conn.connected)
            await agent.stop()
            await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_manual_disconnect_pauses_reconnect(self, store):
        store.update(auto_reconnect=True)
        conn = FakeConnection([True, True])
        agent = NodeAgent(store, identity=MagicMock(), connection=conn)

        with patch("clawnode.agent.RECONNECT_MIN_DELAY", 0.01):
            agent._reconnect_delay = 0.01
            task = asyncio.create_task(agent.run())
            await _until(lambda: conn.connected)
            await agent.disconnect()
            await asyncio.sleep(0.05)
            assert conn.attempts == 1

            assert await agent.connect() is True
            assert conn.attempts == 2
            await agent.stop()
            await asyncio.wait_for(task, timeout=2)
