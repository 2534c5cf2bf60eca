"""Node agent: wires identity, capabilities, dispatcher and gateway connection.

The connection itself never retries. The agent is the caller that decides:
by default reconnecting is manual (``connect()`` again), and with
``auto_reconnect`` enabled it retries with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from . import __version__
from .capabilities import CapabilityRegistry
from .config import SettingsStore
from .connection import ConnectionState, GatewayConnection
from .dispatcher import CommandDispatcher
from .identity import DeviceIdentityManager, IdentityError
from .mdns import discover_gateway

logger = logging.getLogger(__name__)

RECONNECT_MIN_DELAY = 2
RECONNECT_MAX_DELAY = 60
DISCOVERY_TIMEOUT = 30


class NodeAgent:
    """Runs one node: one registry, one dispatcher, one gateway connection."""

    def __init__(
        self,
        store: SettingsStore,
        registry: CapabilityRegistry | None = None,
        identity: DeviceIdentityManager | None = None,
        connection: GatewayConnection | None = None,
    ):
        self.store = store
        self.registry = registry or CapabilityRegistry()
        self.identity = identity or DeviceIdentityManager(store)
        self.dispatcher = CommandDispatcher(self.registry)
        self.connection = connection or GatewayConnection(
            store, self.identity, self.dispatcher, self.registry
        )
        self._running = False
        self._paused = False
        self._stopped = asyncio.Event()
        self._wake = asyncio.Event()
        self._reconnect_delay = RECONNECT_MIN_DELAY
        self._start_time = 0.0

    async def connect(self) -> bool:
        """One connection attempt, discovering the gateway first if needed."""
        self._paused = False
        self._wake.set()
        cfg = self.store.config
        if not cfg.gateway_host and cfg.discover_gateway:
            logger.info("No gateway configured, searching via mDNS...")
            gateway = await discover_gateway(timeout=DISCOVERY_TIMEOUT)
            if gateway is not None:
                self.store.update(
                    gateway_host=gateway.host,
                    gateway_port=gateway.port,
                    gateway_tls=gateway.tls,
                )
        return await self.connection.connect()

    async def disconnect(self) -> None:
        """Close the session; the reconnect loop stays idle until the next connect()."""
        self._paused = True
        await self.connection.disconnect()

    async def run(self) -> None:
        """Connect and keep the node alive until :meth:`stop` is called."""
        cfg = self.store.config
        logger.info("=== clawnode v%s ===", __version__)
        try:
            device = await asyncio.get_running_loop().run_in_executor(None, self.identity.identity)
            logger.info("Device: %s | Name: %s", device.id, cfg.display_name)
        except IdentityError as exc:
            logger.error("Device identity unavailable: %s", exc)
        self._start_time = time.time()
        self._running = True
        self._stopped.clear()

        try:
            connected = await self.connect()
            if not connected:
                logger.error("Initial connection failed: %s", self.connection.last_error)
            if self.store.config.auto_reconnect:
                await self._reconnect_loop()
            else:
                await self._stopped.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Shutting down node agent...")
        self._running = False
        self._stopped.set()
        self._wake.set()
        await self.connection.disconnect()

    async def _reconnect_loop(self) -> None:
        """Reconnect with exponential backoff whenever the session drops."""
        while self._running:
            if self._paused:
                self._wake.clear()
                await self._wake.wait()
                continue
            if self.connection.connected:
                self._reconnect_delay = RECONNECT_MIN_DELAY
                await self.connection.wait_closed()
                continue
            logger.info("Reconnecting in %ds...", self._reconnect_delay)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._reconnect_delay)
                return
            except asyncio.TimeoutError:
                pass
            if not await self.connect():
                self._reconnect_delay = min(self._reconnect_delay * 2, RECONNECT_MAX_DELAY)

    def status(self) -> dict:
        """Snapshot for status displays."""
        cfg = self.store.config
        conn = self.connection
        return {
            "status": conn.status.value,
            "state": conn.state.value,
            "last_error": conn.last_error,
            "gateway": conn.gateway_url(redact=True) if cfg.gateway_host else "",
            "display_name": cfg.display_name,
            "device_id": cfg.device_id,
            "protocol": conn.protocol,
            "policy": dict(conn.policy),
            "capabilities": [d.to_dict() for d in self.registry.descriptors()],
            "uptime": time.time() - self._start_time if self._running else 0.0,
        }

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def reconnect_delay(self) -> Optional[int]:
        return self._reconnect_delay if self.store.config.auto_reconnect else None
