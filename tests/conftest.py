"""pytest configuration and shared fakes for clawnode tests."""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from clawnode.capabilities import (
    AccessibilityProvider,
    AppLauncher,
    CapabilityRegistry,
    ScreenProvider,
)
from clawnode.config import NodeConfig, SettingsStore
from clawnode.identity import DeviceIdentityManager
from clawnode.protocol import UINode

KEY_PASSPHRASE = "test-passphrase"


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# ── Fake providers ────────────────────────────────────────────────


class FakeScreen(ScreenProvider):
    def __init__(self, data: Optional[str] = "iVBORw0KGgo="):
        super().__init__()
        self.data = data
        self.error: Exception | None = None

    async def capture(self) -> Optional[str]:
        if self.error:
            raise self.error
        return self.data


class FakeAccessibility(AccessibilityProvider):
    """Records every call; ``deferred`` gestures wait on a completion future."""

    def __init__(self):
        super().__init__()
        self.nodes: Optional[list[UINode]] = []
        self.result = True
        self.error: Exception | None = None
        self.deferred = False
        self.gesture_started = asyncio.Event()
        self.calls: list[tuple] = []

    async def snapshot(self):
        self.calls.append(("snapshot",))
        if self.error:
            raise self.error
        return self.nodes

    async def tap(self, x, y):
        self.calls.append(("tap", x, y))
        if self.error:
            raise self.error
        return self.result

    async def swipe(self, x1, y1, x2, y2, duration_ms):
        self.calls.append(("swipe", x1, y1, x2, y2, duration_ms))
        if self.deferred:
            future = self.pending_future()
            self.gesture_started.set()
            return await future
        return self.result

    async def set_text(self, text):
        self.calls.append(("set_text", text))
        return self.result

    async def global_action(self, key):
        self.calls.append(("global_action", key))
        return self.result


class FakeLauncher(AppLauncher):
    def __init__(self):
        super().__init__()
        self.launched: list[str] = []

    async def launch(self, package):
        self.launched.append(package)
        return True


# ── Fixtures ──────────────────────────────────────────────────────


@pytest.fixture
def store(tmp_path):
    config = NodeConfig(
        gateway_host="gw.local",
        gateway_token="secret",
        device_id="test-device",
        discover_gateway=False,
        state_dir=str(tmp_path / "state"),
    )
    return SettingsStore(tmp_path / "config.json", config=config)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_passphrase():
    return KEY_PASSPHRASE


@pytest.fixture
def identity(store, rsa_key):
    """Identity manager backed by a pre-generated key."""
    key_path = store.config.key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(KEY_PASSPHRASE.encode()),
    ))
    return DeviceIdentityManager(store, passphrase=KEY_PASSPHRASE)


@pytest.fixture
def registry():
    return CapabilityRegistry()


@pytest.fixture
def screen():
    return FakeScreen()


@pytest.fixture
def accessibility():
    return FakeAccessibility()


@pytest.fixture
def launcher():
    return FakeLauncher()
