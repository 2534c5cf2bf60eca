"""Local control API for a running node.

Headless replacement for a settings screen: read status, edit the gateway
settings and connect or disconnect. Bind it to localhost only; there is no
authentication.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__
from .agent import NodeAgent

logger = logging.getLogger(__name__)


class SettingsUpdate(BaseModel):
    gateway_host: str | None = None
    gateway_port: int | None = Field(default=None, ge=1, le=65535)
    gateway_token: str | None = None
    display_name: str | None = None


def _settings(agent: NodeAgent) -> dict:
    cfg = agent.store.config
    return {
        "gateway_host": cfg.gateway_host,
        "gateway_port": cfg.gateway_port,
        "gateway_token": "***" if cfg.gateway_token else "",
        "gateway_tls": cfg.gateway_tls,
        "display_name": cfg.display_name,
        "device_id": cfg.device_id,
        "auto_reconnect": cfg.auto_reconnect,
    }


def create_app(agent: NodeAgent) -> FastAPI:
    app = FastAPI(title="clawnode", version=__version__)

    @app.get("/status")
    async def status():
        return agent.status()

    @app.get("/settings")
    async def get_settings():
        return _settings(agent)

    @app.put("/settings")
    async def put_settings(req: SettingsUpdate):
        cfg = agent.store.config
        try:
            agent.store.save_settings(
                gateway_host=cfg.gateway_host if req.gateway_host is None else req.gateway_host.strip(),
                gateway_port=cfg.gateway_port if req.gateway_port is None else req.gateway_port,
                gateway_token=cfg.gateway_token if req.gateway_token is None else req.gateway_token,
                display_name=cfg.display_name if req.display_name is None else req.display_name,
            )
        except OSError as exc:
            logger.error("Could not save settings: %s", exc)
            raise HTTPException(status_code=500, detail="Could not save settings")
        logger.info("Settings updated via control API")
        return _settings(agent)

    @app.post("/connect")
    async def connect():
        ok = await agent.connect()
        return {"ok": ok, "error": agent.connection.last_error or None, **agent.status()}

    @app.post("/disconnect")
    async def disconnect():
        await agent.disconnect()
        return agent.status()

    @app.get("/capabilities")
    async def capabilities():
        return {
            "capabilities": [d.to_dict() for d in agent.registry.descriptors()],
            "commands": agent.dispatcher.commands,
            "permissions": agent.registry.permissions(),
        }

    return app
