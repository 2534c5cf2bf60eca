"""Command dispatcher: routes gateway ``req`` envelopes to capability providers.

| method     | params                         | provider                          |
|------------|--------------------------------|-----------------------------------|
| screenshot | -                              | ScreenProvider.capture()          |
| ui_tree    | -                              | AccessibilityProvider.snapshot()  |
| tap        | x, y                           | AccessibilityProvider.tap()       |
| swipe      | x1, y1, x2, y2, durationMs=500 | AccessibilityProvider.swipe()     |
| type       | text                           | AccessibilityProvider.set_text()  |
| press      | key: back / home / recents     | AccessibilityProvider.global_action() |
| launch     | package                        | AppLauncher.launch()              |

:meth:`CommandDispatcher.dispatch` always returns a response. Numeric
parameters that are missing or unparsable become ``0``.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Awaitable, Callable

from .capabilities import GLOBAL_ACTIONS, CapabilityRegistry
from .protocol import InvokeRequest, InvokeResponse

logger = logging.getLogger(__name__)

DEFAULT_SWIPE_MS = 500

SUPPORTED_COMMANDS = [
    "screenshot",
    "ui_tree",
    "tap",
    "swipe",
    "type",
    "press",
    "launch",
]

Handler = Callable[[InvokeRequest], Awaitable[InvokeResponse]]


def _float_param(params: dict[str, str], name: str) -> float:
    try:
        value = float(params.get(name, ""))
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


def _int_param(params: dict[str, str], name: str, default: int) -> int:
    raw = params.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        value = float(raw)
    except ValueError:
        return default
    return int(value) if math.isfinite(value) else default


def _success(request: InvokeRequest, ok: bool) -> InvokeResponse:
    return InvokeResponse.success(request.id, {"success": "true" if ok else "false"})


class CommandDispatcher:
    """Stateless router over a :class:`CapabilityRegistry`."""

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry
        self._handlers: dict[str, Handler] = {
            "screenshot": self._screenshot,
            "ui_tree": self._ui_tree,
            "tap": self._tap,
            "swipe": self._swipe,
            "type": self._type,
            "press": self._press,
            "launch": self._launch,
        }

    @property
    def commands(self) -> list[str]:
        return list(SUPPORTED_COMMANDS)

    async def dispatch(self, request: InvokeRequest) -> InvokeResponse:
        """Execute *request* and build its response. Never raises ``Exception``."""
        handler = self._handlers.get(request.method)
        if handler is None:
            logger.warning("Unknown command: %s", request.method)
            return InvokeResponse.failure(request.id, f"Unknown command: {request.method}")

        logger.debug("Dispatching %s (%s)", request.method, request.id)
        try:
            return await handler(request)
        except Exception as exc:
            logger.exception("Error executing command: %s", request.method)
            return InvokeResponse.failure(request.id, f"Command execution failed: {exc}")

    # ── Handlers ──────────────────────────────────────────────────

    async def _screenshot(self, request: InvokeRequest) -> InvokeResponse:
        provider = self.registry.screen()
        if provider is None:
            return InvokeResponse.failure(request.id, "Screen capture not available")
        data = await provider.capture()
        if not data:
            return InvokeResponse.failure(request.id, "Failed to capture screenshot")
        return InvokeResponse.success(request.id, {"format": "png", "base64": data})

    async def _ui_tree(self, request: InvokeRequest) -> InvokeResponse:
        provider = self.registry.accessibility()
        if provider is None:
            return InvokeResponse.failure(request.id, "Accessibility service not available")
        nodes = await provider.snapshot()
        if nodes is None:
            return InvokeResponse.failure(request.id, "Failed to read UI tree")
        tree = json.dumps([node.to_dict() for node in nodes], separators=(",", ":"))
        return InvokeResponse.success(request.id, {"tree": tree})

    async def _tap(self, request: InvokeRequest) -> InvokeResponse:
        x = _float_param(request.params, "x")
        y = _float_param(request.params, "y")
        provider = self.registry.accessibility()
        ok = await provider.tap(x, y) if provider else False
        return _success(request, ok)

    async def _swipe(self, request: InvokeRequest) -> InvokeResponse:
        p = request.params
        x1, y1 = _float_param(p, "x1"), _float_param(p, "y1")
        x2, y2 = _float_param(p, "x2"), _float_param(p, "y2")
        duration = _int_param(p, "durationMs", DEFAULT_SWIPE_MS)
        provider = self.registry.accessibility()
        ok = await provider.swipe(x1, y1, x2, y2, duration) if provider else False
        return _success(request, ok)

    async def _type(self, request: InvokeRequest) -> InvokeResponse:
        text = request.params.get("text", "")
        provider = self.registry.accessibility()
        ok = await provider.set_text(text) if provider else False
        return _success(request, ok)

    async def _press(self, request: InvokeRequest) -> InvokeResponse:
        key = request.params.get("key", "")
        provider = self.registry.accessibility()
        if provider is None or key not in GLOBAL_ACTIONS:
            return _success(request, False)
        return _success(request, await provider.global_action(key))

    async def _launch(self, request: InvokeRequest) -> InvokeResponse:
        package = request.params.get("package", "")
        provider = self.registry.launcher()
        if provider is None or not package:
            return _success(request, False)
        return _success(request, await provider.launch(package))
