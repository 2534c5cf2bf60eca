"""Configuration for the clawnode agent.

Settings live in a single JSON file. The gateway coordinates and display
name are written on an explicit save; the device id and device token are
written by the identity manager and the connection after a handshake.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PORT = 18789
DEFAULT_CONFIG_PATH = Path.home() / ".clawnode" / "config.json"


@dataclass
class NodeConfig:
    """Node configuration, loaded from config.json."""

    # Gateway
    gateway_host: str = ""
    gateway_port: int = DEFAULT_PORT
    gateway_token: str = ""
    gateway_tls: bool = False
    display_name: str = "Python Node"

    # Identity (written by the node itself)
    device_id: str = ""
    device_token: str = ""

    locale: str = "en-US"
    handshake_timeout: float = 0  # seconds, 0 = wait forever
    auto_reconnect: bool = False
    discover_gateway: bool = True

    # Local control API, 0 disables it
    control_host: str = "127.0.0.1"
    control_port: int = 0

    state_dir: str = "~/.clawnode"

    @classmethod
    def load(cls, path: str | Path) -> NodeConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(asdict(self), f, indent=2)
        os.replace(tmp, path)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def key_path(self) -> Path:
        return self.state_path / "device_key.pem"


class SettingsStore:
    """Thread-safe owner of a :class:`NodeConfig` and its file.

    Every mutation is written through to disk. Readers get a snapshot via
    :attr:`config`, never a half-applied update.

    *overrides* (environment and command-line values) sit on top of the
    file for this process only. They show in :attr:`config` but are never
    written; an explicit update of the same field replaces the override.
    """

    def __init__(
        self,
        path: str | Path,
        config: NodeConfig | None = None,
        overrides: dict | None = None,
    ):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._saved = config if config is not None else NodeConfig.load(self.path)
        self._overrides = dict(overrides or {})
        _check_fields(self._overrides)
        self._config = replace(self._saved, **self._overrides)

    @property
    def config(self) -> NodeConfig:
        return self._config

    @property
    def overrides(self) -> dict:
        return dict(self._overrides)

    def update(self, **changes) -> NodeConfig:
        """Apply *changes* and persist. Unknown field names raise ``TypeError``."""
        _check_fields(changes)
        with self._lock:
            saved = replace(self._saved, **changes)
            saved.save(self.path)
            self._saved = saved
            for name in changes:
                self._overrides.pop(name, None)
            self._config = replace(saved, **self._overrides)
            return self._config

    def save_settings(
        self,
        gateway_host: str,
        gateway_port: int,
        gateway_token: str,
        display_name: str,
    ) -> NodeConfig:
        return self.update(
            gateway_host=gateway_host,
            gateway_port=gateway_port,
            gateway_token=gateway_token,
            display_name=display_name,
        )

    def save_device_info(self, device_id: str, device_token: str) -> NodeConfig:
        return self.update(device_id=device_id, device_token=device_token)


def _check_fields(changes: dict) -> None:
    known = {f.name for f in fields(NodeConfig)}
    unknown = set(changes) - known
    if unknown:
        raise TypeError(f"Unknown config fields: {', '.join(sorted(unknown))}")
