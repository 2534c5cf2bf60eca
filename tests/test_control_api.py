"""Tests for the local control API."""

from __future__ import annotations

import json

import pytest

from clawnode.agent import NodeAgent
from clawnode.control_api import create_app


@pytest.fixture
def agent(store, identity, registry):
    return NodeAgent(store, registry=registry, identity=identity)


@pytest.fixture
def client(agent):
    from fastapi.testclient import TestClient
    return TestClient(create_app(agent))


class TestStatusEndpoint:
    def test_status(self, client):
        resp = client.get("/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "Disconnected"
        assert data["state"] == "idle"
        assert data["gateway"] == "ws://gw.local:18789/?token=***"

    def test_capabilities(self, client, registry, screen, launcher):
        registry.register(screen)
        registry.register(launcher)
        data = client.get("/capabilities").json()
        assert data["capabilities"] == [
            {"name": "accessibility", "available": False},
            {"name": "screen", "available": True},
            {"name": "system", "available": True},
        ]
        assert data["permissions"]["screen.capture"] is True
        assert "launch" in data["commands"]


class TestSettingsEndpoint:
    def test_get_redacts_token(self, client):
        data = client.get("/settings").json()
        assert data["gateway_host"] == "gw.local"
        assert data["gateway_port"] == 18789
        assert data["gateway_token"] == "***"
        assert "secret" not in json.dumps(data)

    def test_partial_update(self, client, store):
        resp = client.put("/settings", json={"gateway_host": " 192.168.1.50 ", "display_name": "Desk"})
        assert resp.status_code == 200
        assert resp.json()["gateway_host"] == "192.168.1.50"
        assert store.config.gateway_host == "192.168.1.50"
        assert store.config.display_name == "Desk"
        assert store.config.gateway_token == "secret"

        on_disk = json.loads(store.path.read_text())
        assert on_disk["gateway_host"] == "192.168.1.50"

    def test_clear_token(self, client, store):
        client.put("/settings", json={"gateway_token": ""})
        assert store.config.gateway_token == ""
        assert client.get("/settings").json()["gateway_token"] == ""

    @pytest.mark.parametrize("port", [0, 70000, "abc"])
    def test_invalid_port(self, client, store, port):
        resp = client.put("/settings", json={"gateway_port": port})
        assert resp.status_code == 422
        assert store.config.gateway_port == 18789


class TestConnectEndpoints:
    def test_connect_without_host(self, client, store):
        store.update(gateway_host="")
        data = client.post("/connect").json()
        assert data["ok"] is False
        assert data["error"] == "Gateway host is not configured"
        assert data["state"] == "failed"

    def test_disconnect_clears_failure(self, client, store):
        store.update(gateway_host="")
        client.post("/connect")
        data = client.post("/disconnect").json()
        assert data["state"] == "idle"
        assert data["status"] == "Disconnected"
