"""clawnode entry point.

Usage:
    python -m clawnode [--config CONFIG_PATH] [--host HOST] [--port PORT]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal

import uvicorn

from .agent import NodeAgent
from .config import DEFAULT_CONFIG_PATH, SettingsStore
from .control_api import create_app

logger = logging.getLogger("clawnode")


class _ControlServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the node."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="clawnode automation node")
    parser.add_argument(
        "--config", "-c",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to config.json (default: %(default)s)",
    )
    parser.add_argument("--host", default=None, help="Gateway host (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Gateway port (overrides config)")
    parser.add_argument(
        "--token",
        default=None,
        help="Gateway token (overrides config and CLAWNODE_GATEWAY_TOKEN)",
    )
    parser.add_argument("--name", default=None, help="Display name (overrides config)")
    parser.add_argument(
        "--control-port",
        type=int,
        default=None,
        help="Serve the local control API on this port, 0 disables it",
    )
    parser.add_argument(
        "--reconnect",
        action="store_true",
        help="Reconnect automatically with backoff",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def collect_overrides(args: argparse.Namespace) -> dict:
    """Config fields set by environment variables and CLI flags.

    These apply to this run only; the settings store never writes them.
    """
    changes: dict = {}
    env_token = os.environ.get("CLAWNODE_GATEWAY_TOKEN")
    if env_token:
        changes["gateway_token"] = env_token
    if args.token:
        changes["gateway_token"] = args.token
    if args.host:
        changes["gateway_host"] = args.host
    if args.port is not None:
        changes["gateway_port"] = args.port
    if args.name:
        changes["display_name"] = args.name
    if args.control_port is not None:
        changes["control_port"] = args.control_port
    if args.reconnect:
        changes["auto_reconnect"] = True
    return changes


async def serve(agent: NodeAgent) -> None:
    """Run the agent, plus the control API when a control port is set."""
    cfg = agent.store.config
    server = None
    extra: list[asyncio.Task] = []
    if cfg.control_port > 0:
        server = _ControlServer(uvicorn.Config(
            create_app(agent),
            host=cfg.control_host,
            port=cfg.control_port,
            log_level="warning",
        ))
        extra.append(asyncio.create_task(server.serve()))
        logger.info("Control API on http://%s:%d", cfg.control_host, cfg.control_port)
    try:
        await agent.run()
    finally:
        if server is not None:
            server.should_exit = True
        await asyncio.gather(*extra, return_exceptions=True)


def main() -> None:
    args = build_parser().parse_args()

    # Logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    store = SettingsStore(args.config, overrides=collect_overrides(args))
    agent = NodeAgent(store)

    loop = asyncio.new_event_loop()
    main_task = loop.create_task(serve(agent))

    # Graceful shutdown on SIGINT/SIGTERM
    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(main_task)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()
