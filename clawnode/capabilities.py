"""Capability providers and the registry the dispatcher reads from.

Providers are platform services (screen capture, accessibility, app
launching) that come and go at runtime. Each one has explicit
``start()``/``stop()`` hooks; a registry that tracks a provider registers
it on start and drops it on stop. A provider that is stopped looks
exactly like one that was never there.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .protocol import UINode

logger = logging.getLogger(__name__)

SCREEN = "screen"
ACCESSIBILITY = "accessibility"
SYSTEM = "system"

CAPABILITY_KINDS = (ACCESSIBILITY, SCREEN, SYSTEM)

# Permission names the gateway expects in the connect request.
PERMISSIONS = {
    ACCESSIBILITY: "accessibility",
    SCREEN: "screen.capture",
    SYSTEM: "system.launch",
}

GLOBAL_ACTIONS = ("back", "home", "recents")

LifecycleListener = Callable[["CapabilityProvider", bool], None]


def _call_in_loop(loop: asyncio.AbstractEventLoop, fn: Callable[[], Any]) -> None:
    """Run *fn* on *loop*: inline when already there, else thread-safely."""
    try:
        current = asyncio.get_running_loop()
    except RuntimeError:
        current = None
    if current is loop:
        fn()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(fn)


@dataclass(frozen=True)
class CapabilityDescriptor:
    name: str
    available: bool

    def to_dict(self) -> dict:
        return {"name": self.name, "available": self.available}


class CapabilityProvider(abc.ABC):
    """Base for all providers: lifecycle hooks and cancellable completions."""

    capability: str = ""

    def __init__(self) -> None:
        self._running = False
        self._listeners: list[LifecycleListener] = []
        self._pending: set[asyncio.Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: LifecycleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """Mark the underlying platform service as up and notify subscribers."""
        if self._running:
            return
        self._running = True
        logger.info("Capability provider started: %s", self.capability)
        self._notify(True)

    def stop(self) -> None:
        """Mark the service as down, cancel pending work, notify subscribers."""
        if not self._running:
            return
        self._running = False
        self.cancel_pending()
        logger.info("Capability provider stopped: %s", self.capability)
        self._notify(False)

    def _notify(self, running: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, running)
            except Exception:
                logger.exception("Lifecycle listener failed for %s", self.capability)

    # ── Completion futures ────────────────────────────────────────

    def pending_future(self) -> asyncio.Future:
        """Create a future for a callback-completed operation (e.g. a gesture).

        Must be called from the event loop. The platform callback completes
        it with :meth:`resolve`; :meth:`cancel_pending` cancels it.
        """
        future = asyncio.get_running_loop().create_future()
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: asyncio.Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    @staticmethod
    def resolve(future: asyncio.Future, value: Any) -> None:
        """Complete *future* from any thread; no-op if it is already done."""

        def _set() -> None:
            if not future.done():
                future.set_result(value)

        _call_in_loop(future.get_loop(), _set)

    def cancel_pending(self) -> int:
        """Cancel every outstanding completion future. Returns how many."""
        with self._pending_lock:
            pending = list(self._pending)
            self._pending.clear()
        for future in pending:
            if not future.done():
                _call_in_loop(future.get_loop(), future.cancel)
        return len(pending)


class ScreenProvider(CapabilityProvider):
    capability = SCREEN

    @abc.abstractmethod
    async def capture(self) -> Optional[str]:
        """Return the current screen as a base64 PNG, or ``None``."""
        raise NotImplementedError


class AccessibilityProvider(CapabilityProvider):
    capability = ACCESSIBILITY

    @abc.abstractmethod
    async def snapshot(self) -> Optional[list[UINode]]:
        """Return the active window's node forest, or ``None`` if unreadable."""
        raise NotImplementedError

    @abc.abstractmethod
    async def tap(self, x: float, y: float) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def swipe(self, x1: float, y1: float, x2: float, y2: float, duration_ms: int) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def set_text(self, text: str) -> bool:
        """Set the text of the focused editable node."""
        raise NotImplementedError

    @abc.abstractmethod
    async def global_action(self, key: str) -> bool:
        """Perform one of :data:`GLOBAL_ACTIONS`."""
        raise NotImplementedError


class AppLauncher(CapabilityProvider):
    capability = SYSTEM

    @abc.abstractmethod
    async def launch(self, package: str) -> bool:
        raise NotImplementedError


class CapabilityRegistry:
    """Lookup of the currently available provider per capability kind.

    Writers are serialized by a lock and publish a new mapping each time;
    readers take the current mapping without locking, so they always see a
    complete registration state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, CapabilityProvider] = {}
        self._tracked: list[CapabilityProvider] = []

    def register(self, provider: CapabilityProvider) -> None:
        kind = provider.capability
        if kind not in CAPABILITY_KINDS:
            raise ValueError(f"Unknown capability kind: {kind!r}")
        with self._lock:
            providers = dict(self._providers)
            previous = providers.get(kind)
            providers[kind] = provider
            self._providers = providers
        if previous is not None and previous is not provider:
            logger.info("Replaced %s provider %s", kind, type(previous).__name__)
        logger.debug("Registered %s provider %s", kind, type(provider).__name__)

    def deregister(self, provider: CapabilityProvider | str) -> bool:
        """Remove a provider (or whatever holds a kind). Returns whether one was removed."""
        with self._lock:
            if isinstance(provider, str):
                kind = provider
                current = self._providers.get(kind)
            else:
                kind = provider.capability
                current = self._providers.get(kind)
                if current is not provider:
                    return False
            if current is None:
                return False
            providers = dict(self._providers)
            del providers[kind]
            self._providers = providers
        logger.debug("Deregistered %s provider", kind)
        return True

    def get(self, kind: str) -> Optional[CapabilityProvider]:
        return self._providers.get(kind)

    def screen(self) -> Optional[ScreenProvider]:
        return self._providers.get(SCREEN)  # type: ignore[return-value]

    def accessibility(self) -> Optional[AccessibilityProvider]:
        return self._providers.get(ACCESSIBILITY)  # type: ignore[return-value]

    def launcher(self) -> Optional[AppLauncher]:
        return self._providers.get(SYSTEM)  # type: ignore[return-value]

    def track(self, provider: CapabilityProvider) -> None:
        """Follow *provider*'s lifecycle: registered while running."""
        provider.subscribe(self._on_lifecycle)
        self._tracked.append(provider)
        if provider.running:
            self.register(provider)

    def untrack(self, provider: CapabilityProvider) -> None:
        provider.unsubscribe(self._on_lifecycle)
        if provider in self._tracked:
            self._tracked.remove(provider)
        self.deregister(provider)

    def _on_lifecycle(self, provider: CapabilityProvider, running: bool) -> None:
        if running:
            self.register(provider)
        else:
            self.deregister(provider)

    def descriptors(self) -> list[CapabilityDescriptor]:
        providers = self._providers
        return [CapabilityDescriptor(kind, kind in providers) for kind in CAPABILITY_KINDS]

    def permissions(self) -> dict[str, bool]:
        providers = self._providers
        return {PERMISSIONS[kind]: kind in providers for kind in CAPABILITY_KINDS}

    def cancel_pending(self) -> int:
        """Cancel outstanding completions on every registered provider."""
        return sum(p.cancel_pending() for p in self._providers.values())
