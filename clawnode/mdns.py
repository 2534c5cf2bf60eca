"""Gateway discovery over mDNS.

Browses for ``_openclaw-gw._tcp.local.`` and reports the first gateway
found, so a node with no configured host can still connect on a LAN.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .config import DEFAULT_PORT

logger = logging.getLogger(__name__)

GATEWAY_SERVICE_TYPE = "_openclaw-gw._tcp.local."
RESOLVE_TIMEOUT_MS = 3000


@dataclass
class DiscoveredGateway:
    host: str
    port: int = DEFAULT_PORT
    name: str = ""
    tls: bool = False
    properties: dict = field(default_factory=dict)


def _decode_properties(raw: dict | None) -> dict[str, str]:
    props: dict[str, str] = {}
    for key, value in (raw or {}).items():
        k = key.decode("utf-8", "replace") if isinstance(key, bytes) else str(key)
        if value is None:
            props[k] = ""
        elif isinstance(value, bytes):
            props[k] = value.decode("utf-8", "replace")
        else:
            props[k] = str(value)
    return props


def gateway_from_info(info) -> Optional[DiscoveredGateway]:
    """Build a :class:`DiscoveredGateway` from a zeroconf ``ServiceInfo``."""
    if info is None:
        return None
    addresses = info.parsed_addresses()
    if not addresses:
        return None
    ipv4 = [a for a in addresses if "." in a]
    props = _decode_properties(info.properties)
    port = info.port or DEFAULT_PORT
    if props.get("gatewayPort", "").isdigit():
        port = int(props["gatewayPort"])
    return DiscoveredGateway(
        host=(ipv4 or addresses)[0],
        port=port,
        name=props.get("displayName") or info.name,
        tls=props.get("gatewayTls", "").lower() in ("1", "true"),
        properties=props,
    )


class GatewayDiscovery:
    """Discovers a gateway on the local network via mDNS.

    ``on_found`` is called once, on the event loop, with the first gateway
    that resolves.
    """

    def __init__(self, on_found: Callable[[DiscoveredGateway], None]):
        self.on_found = on_found
        self._aiozc: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._tasks: set[asyncio.Task] = set()
        self._found = False

    async def start(self) -> None:
        self._aiozc = AsyncZeroconf()
        self._browser = AsyncServiceBrowser(
            self._aiozc.zeroconf,
            GATEWAY_SERVICE_TYPE,
            handlers=[self._on_state_change],
        )
        logger.info("mDNS: browsing for gateway (%s)", GATEWAY_SERVICE_TYPE)

    def _on_state_change(
        self, zeroconf: Zeroconf, service_type: str,
        name: str, state_change: ServiceStateChange,
    ) -> None:
        if state_change != ServiceStateChange.Added or self._found:
            return
        task = asyncio.ensure_future(self._resolve(zeroconf, service_type, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, RESOLVE_TIMEOUT_MS):
            logger.debug("mDNS: could not resolve %s", name)
            return
        gateway = gateway_from_info(info)
        if gateway is None or self._found:
            return
        logger.info("mDNS: discovered gateway %s at %s:%d", gateway.name, gateway.host, gateway.port)
        self._found = True
        self.on_found(gateway)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._aiozc:
            await self._aiozc.async_close()
            self._aiozc = None

    @property
    def found(self) -> bool:
        return self._found


async def discover_gateway(timeout: float = 10.0) -> Optional[DiscoveredGateway]:
    """Browse for up to *timeout* seconds and return the first gateway, if any."""
    result: asyncio.Future = asyncio.get_running_loop().create_future()

    def _found(gateway: DiscoveredGateway) -> None:
        if not result.done():
            result.set_result(gateway)

    discovery = GatewayDiscovery(_found)
    await discovery.start()
    try:
        return await asyncio.wait_for(result, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("mDNS: no gateway found within %.0fs", timeout)
        return None
    finally:
        await discovery.stop()
