"""Tests for the device registry."""

from __future__ import annotations

import asyncio

import pytest

from core import DeviceRegistry
from error_handler import NotFoundError, ProtocolError, ValidationError
from modules.event_bus import EventType


class TestRegister:
    """Tests for DeviceRegistry.register."""

    async def test_register_assigns_id_and_publishes(self, registry, settle, events) -> None:
        device = await registry.register({"name": "Lamp", "type": "light", "protocol": "virtual"})
        await settle()

        assert device.id
        assert device.online is True
        assert device.state == {}
        assert [e.type for e in events] == [EventType.DEVICE_REGISTERED]
        assert events[0].payload["device"]["id"] == device.id

    @pytest.mark.parametrize("missing", ["name", "type", "protocol"])
    async def test_register_requires_fields(self, registry, missing) -> None:
        spec = {"name": "Lamp", "type": "light", "protocol": "virtual"}
        spec[missing] = ""
        with pytest.raises(ValidationError):
            await registry.register(spec)

    async def test_duplicate_address_rejected(self, registry) -> None:
        await registry.register({"name": "A", "type": "plug", "protocol": "mqtt", "address": "plug_1"})
        with pytest.raises(ValidationError):
            await registry.register({"name": "B", "type": "plug", "protocol": "mqtt", "address": "PLUG_1"})
        assert len(registry.list()) == 1

    async def test_concurrent_duplicate_address(self, registry) -> None:
        results = await asyncio.gather(
            registry.register({"name": "A", "type": "plug", "protocol": "mqtt", "address": "plug_2"}),
            registry.register({"name": "B", "type": "plug", "protocol": "mqtt", "address": "plug_2"}),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ValidationError) for r in results) == 1
        assert [d.name for d in registry.list()] == ["A"]

    async def test_get_by_address(self, registry) -> None:
        device = await registry.register({"name": "A", "type": "plug", "protocol": "mqtt", "address": "Plug_1"})
        assert registry.get_by_address("plug_1").id == device.id
        assert registry.get_by_address("nope") is None

    async def test_reads_return_copies(self, registry, light) -> None:
        copy = registry.get(light.id)
        copy.state["state"] = "ON"
        copy.capabilities.add("hacked")
        assert registry.get(light.id).state == {}
        assert "hacked" not in registry.get(light.id).capabilities


class TestUpdateState:
    """Tests for state merging, history and events."""

    async def test_partial_merge(self, registry, light) -> None:
        await registry.update_state(light.id, {"state": "ON", "brightness": 40})
        merged = await registry.update_state(light.id, {"brightness": 80})
        assert merged == {"state": "ON", "brightness": 80}
        assert registry.get(light.id).state == merged

    async def test_history_records_full_state(self, registry, light) -> None:
        await registry.update_state(light.id, {"state": "ON"}, actor="user-1")
        await registry.update_state(light.id, {"brightness": 10})

        history = await registry.get_history(light.id)
        assert [h.state for h in history] == [{"state": "ON"}, {"state": "ON", "brightness": 10}]
        assert history[0].triggered_by == "user-1"
        assert history[1].triggered_by is None

    async def test_history_limit_keeps_newest(self, registry, light) -> None:
        for level in range(5):
            await registry.update_state(light.id, {"brightness": level})
        history = await registry.get_history(light.id, limit=2)
        assert [h.state["brightness"] for h in history] == [3, 4]

    async def test_state_changed_payload(self, registry, light, settle, events) -> None:
        await registry.update_state(light.id, {"state": "ON"}, actor="tester")
        await settle()

        changed = [e for e in events if e.type == EventType.DEVICE_STATE_CHANGED]
        assert len(changed) == 1
        assert changed[0].payload == {
            "device_id": light.id,
            "old_state": {},
            "new_state": {"state": "ON"},
            "triggered_by": "tester",
        }

    async def test_offline_device_comes_back_online(self, registry, light, settle, events) -> None:
        await registry.mark_offline(light.id)
        await registry.update_state(light.id, {"state": "ON"})
        await settle()

        types = [e.type for e in events if e.type != EventType.DEVICE_REGISTERED]
        assert types == [EventType.DEVICE_OFFLINE, EventType.DEVICE_ONLINE, EventType.DEVICE_STATE_CHANGED]
        assert registry.get(light.id).online is True

    async def test_unknown_device(self, registry) -> None:
        with pytest.raises(NotFoundError):
            await registry.update_state("missing", {"state": "ON"})

    async def test_concurrent_updates_are_serialised(self, registry, light) -> None:
        await asyncio.gather(*(registry.update_state(light.id, {f"k{i}": i}) for i in range(10)))
        state = registry.get(light.id).state
        assert state == {f"k{i}": i for i in range(10)}
        assert len(await registry.get_history(light.id)) == 10


class TestInfoAndLifecycle:
    """Tests for update_info, delete, availability and reload."""

    async def test_update_info(self, registry, light) -> None:
        updated = await registry.update_info(light.id, {"name": "Porch", "room_id": "outside", "protocol": "mqtt"})
        assert updated.name == "Porch"
        assert updated.room_id == "outside"
        assert updated.protocol == "virtual"

    async def test_update_info_without_fields(self, registry, light) -> None:
        with pytest.raises(ValidationError):
            await registry.update_info(light.id, {"address": "x"})

    async def test_delete_removes_history(self, registry, storage, light, settle, events) -> None:
        await registry.update_state(light.id, {"state": "ON"})
        await registry.delete(light.id)
        await settle()

        assert registry.get(light.id) is None
        assert storage.count_rows("device_history") == 0
        assert events[-1].type == EventType.DEVICE_DELETED
        with pytest.raises(NotFoundError):
            await registry.delete(light.id)

    async def test_concurrent_deletes_publish_once(self, registry, light, settle, events) -> None:
        results = await asyncio.gather(registry.delete(light.id), registry.delete(light.id), return_exceptions=True)
        await settle()

        assert sum(isinstance(r, NotFoundError) for r in results) == 1
        assert [e.type for e in events].count(EventType.DEVICE_DELETED) == 1

    async def test_mark_unknown_device_is_noop(self, registry) -> None:
        await registry.mark_offline("missing")
        await registry.mark_online("missing")

    async def test_reload_from_storage(self, registry, storage, bus, light) -> None:
        await registry.update_state(light.id, {"state": "ON"})
        await registry.mark_offline(light.id)

        fresh = DeviceRegistry(storage, bus)
        assert await fresh.load() == 1
        device = fresh.get(light.id)
        assert device.state == {"state": "ON"}
        assert device.online is False

    async def test_list_filters_and_statistics(self, registry, light, sensor) -> None:
        await registry.mark_offline(sensor.id)
        assert [d.id for d in registry.list(type="light")] == [light.id]
        assert [d.id for d in registry.list(online=False)] == [sensor.id]

        stats = registry.statistics()
        assert stats["total"] == 2
        assert stats["online"] == 1
        assert stats["by_protocol"] == {"virtual": 2}


class TestControl:
    """Tests for command dispatch to protocol adapters."""

    async def test_loopback_applies_patch(self, registry, light, settle, events) -> None:
        result = await registry.control_device(light.id, "set_brightness", {"brightness": 150}, actor="auto-1")
        await settle()

        assert result["success"] is True
        assert result["acknowledged"] is True
        assert registry.get(light.id).state == {"brightness": 100, "state": "ON"}
        history = await registry.get_history(light.id)
        assert history[-1].triggered_by == "auto-1"
        control = [e for e in events if e.type == EventType.DEVICE_CONTROL][0]
        assert control.payload["command"] == "set_brightness"

    async def test_no_adapter_publishes_only(self, registry) -> None:
        device = await registry.register({"name": "Bulb", "type": "light", "protocol": "zigbee", "address": "0x01"})
        result = await registry.control_device(device.id, "turn_on")
        assert result["acknowledged"] is False
        assert registry.get(device.id).state == {}

    async def test_unsupported_command_is_protocol_error(self, registry, light) -> None:
        with pytest.raises(ProtocolError):
            await registry.control_device(light.id, "self_destruct")

    async def test_unknown_device(self, registry) -> None:
        with pytest.raises(NotFoundError):
            await registry.control_device("missing", "turn_on")
