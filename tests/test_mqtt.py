"""Tests for MQTT message routing and command publishing (no broker)."""

from __future__ import annotations

import json

import pytest

from error_handler import ProtocolError
from mqtt import MQTTService


class FakeClient:
    def __init__(self):
        self.published = []

    async def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))


@pytest.fixture
async def mqtt_service(registry):
    service = MQTTService(registry, broker_host="broker.test", base_topic="hub")
    service.client = FakeClient()
    service._connected = True
    registry.attach_adapter("mqtt", service)
    return service


@pytest.fixture
async def plug(registry):
    return await registry.register({"name": "Plug", "type": "plug", "protocol": "mqtt", "address": "plug_1"})


class TestInbound:
    """Tests for state and availability topics."""

    async def test_json_state(self, mqtt_service, registry, plug) -> None:
        await mqtt_service.handle_message("hub/plug_1", json.dumps({"state": "ON", "power": 12.5}))
        assert registry.get(plug.id).state == {"state": "ON", "power": 12.5}
        history = await registry.get_history(plug.id)
        assert history[-1].triggered_by == "mqtt"

    async def test_bare_state(self, mqtt_service, registry, plug) -> None:
        await mqtt_service.handle_message("hub/plug_1", "OFF")
        assert registry.get(plug.id).state == {"state": "OFF"}

    async def test_availability(self, mqtt_service, registry, plug) -> None:
        await mqtt_service.handle_message("hub/plug_1/availability", "offline")
        assert registry.get(plug.id).online is False
        await mqtt_service.handle_message("hub/plug_1/availability", "online")
        assert registry.get(plug.id).online is True

    async def test_ignored_topics(self, mqtt_service, registry, plug) -> None:
        await mqtt_service.handle_message("hub/unknown", "ON")
        await mqtt_service.handle_message("hub/plug_1/set", "ON")
        await mqtt_service.handle_message("hub/bridge/state", "online")
        await mqtt_service.handle_message("other/plug_1", "ON")
        assert registry.get(plug.id).state == {}
        assert mqtt_service.stats["unknown_device"] == 1


class TestOutbound:
    """Tests for command publishing."""

    async def test_control_publishes_patch(self, mqtt_service, registry, plug) -> None:
        result = await registry.control_device(plug.id, "turn_on", actor="user")
        assert result["acknowledged"] is True
        topic, payload, _, retain = mqtt_service.client.published[-1]
        assert topic == "hub/plug_1/set"
        assert json.loads(payload) == {"state": "ON"}
        assert retain is False
        # State changes only when the device reports back
        assert registry.get(plug.id).state == {}

    async def test_unsupported_command_not_retried(self, mqtt_service, registry, plug) -> None:
        with pytest.raises(ProtocolError):
            await registry.control_device(plug.id, "explode")
        assert mqtt_service.client.published == []

    def test_parse_payload(self) -> None:
        assert MQTTService.parse_payload('{"a": 1}') == {"a": 1}
        assert MQTTService.parse_payload("{oops") == {"state": "{oops"}
        assert MQTTService.parse_payload(" ON ") == {"state": "ON"}
