"""End-to-end tests of the application lifespan."""

from __future__ import annotations

import logging

import pytest
import yaml
from fastapi.testclient import TestClient


@pytest.fixture
def app_client(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "hub": {"db_path": str(tmp_path / "hub.db")},
        "logging": {"file": str(tmp_path / "logs" / "hub.log"), "level": "WARNING"},
        "ai": {"providers": {"ollama": {"base_url": "http://127.0.0.1:9"}}},
    }))
    monkeypatch.setenv("HUB_CONFIG", str(path))

    import main

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        with TestClient(main.app) as client:
            yield client
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)


def test_health(app_client) -> None:
    body = app_client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["devices"]["total"] == 0
    assert body["mqtt"] == {"connected": False}


def test_websocket_relays_events(app_client) -> None:
    with app_client.websocket_connect("/ws") as ws:
        resp = app_client.post("/api/devices", json={"name": "Lamp", "type": "light", "protocol": "virtual"})
        assert resp.status_code == 200
        message = ws.receive_json()
    assert message["type"] == "device.registered"
    assert message["payload"]["device"]["name"] == "Lamp"


def test_virtual_device_round_trip(app_client) -> None:
    device_id = app_client.post(
        "/api/devices", json={"name": "Lamp", "type": "light", "protocol": "virtual"},
    ).json()["id"]
    resp = app_client.post(f"/api/devices/{device_id}/control", json={"command": "turn_on"})
    assert resp.json()["acknowledged"] is True
    assert app_client.get(f"/api/devices/{device_id}").json()["state"] == {"state": "ON"}
