"""Tests for SQLite storage."""

from __future__ import annotations

import time

import pytest

from error_handler import StorageError
from modules.storage import HubStorage


def device_row(device_id="d1", address=None, **extra):
    now = time.time()
    row = {
        "id": device_id, "address": address, "name": "Lamp", "type": "light",
        "protocol": "virtual", "state": {}, "capabilities": ["on_off"], "metadata": {},
        "online": True, "created_at": now, "updated_at": now,
    }
    row.update(extra)
    return row


def automation_row(automation_id="a1", **extra):
    now = time.time()
    row = {
        "id": automation_id, "name": "Auto", "description": "",
        "trigger": {"type": "time", "config": {"time": "07:00"}},
        "conditions": [], "actions": [{"type": "delay", "duration": 5}],
        "enabled": True, "created_by": None, "ai_generated": False, "ai_metadata": None,
        "last_triggered": None, "trigger_count": 0, "created_at": now, "updated_at": now,
    }
    row.update(extra)
    return row


def log_row(log_id, automation_id="a1", timestamp=None):
    return {
        "id": log_id, "automation_id": automation_id, "status": "success",
        "trigger_data": {"type": "manual"}, "actions_executed": [], "error": None,
        "timestamp": timestamp if timestamp is not None else time.time(),
    }


class TestDevices:
    """Tests for device rows and history."""

    def test_insert_and_load_round_trip(self, storage) -> None:
        storage.insert_device(device_row(capabilities=["on_off", "dim"], metadata={"floor": 1}))
        loaded = storage.load_devices()[0]
        assert loaded["capabilities"] == ["on_off", "dim"]
        assert loaded["metadata"] == {"floor": 1}
        assert loaded["online"] is True

    def test_duplicate_address_is_storage_error(self, storage) -> None:
        storage.insert_device(device_row("d1", address="x"))
        with pytest.raises(StorageError):
            storage.insert_device(device_row("d2", address="x"))

    def test_save_state_writes_state_and_history(self, storage) -> None:
        storage.insert_device(device_row())
        storage.save_state("d1", {"state": "ON"}, 100.0,
                           {"id": "h1", "state": {"state": "ON"}, "triggered_by": "t", "timestamp": 100.0})
        assert storage.load_devices()[0]["state"] == {"state": "ON"}
        assert storage.get_history("d1") == [
            {"id": "h1", "device_id": "d1", "state": {"state": "ON"}, "triggered_by": "t", "timestamp": 100.0},
        ]

    def test_history_for_unknown_device_fails(self, storage) -> None:
        with pytest.raises(StorageError):
            storage.save_state("nope", {}, 1.0, {"id": "h1", "state": {}, "timestamp": 1.0})

    def test_purge_history(self, storage) -> None:
        storage.insert_device(device_row())
        for i, ts in enumerate((10.0, 20.0, 30.0)):
            storage.save_state("d1", {"n": i}, ts, {"id": f"h{i}", "state": {"n": i}, "timestamp": ts})
        assert storage.purge_history(25.0) == 2
        assert [h["state"]["n"] for h in storage.get_history("d1")] == [2]

    def test_delete_cascades_history(self, storage) -> None:
        storage.insert_device(device_row())
        storage.save_state("d1", {}, 1.0, {"id": "h1", "state": {}, "timestamp": 1.0})
        storage.delete_device("d1")
        assert storage.count_rows("devices") == 0
        assert storage.count_rows("device_history") == 0


class TestAutomations:
    """Tests for automation rows and logs."""

    def test_upsert_does_not_reset_counters(self, storage) -> None:
        storage.upsert_automation(automation_row())
        assert storage.record_trigger("a1", 120.0) == 1
        assert storage.record_trigger("a1", 123.0) == 2
        storage.upsert_automation(automation_row(name="Renamed"))

        loaded = storage.load_automations()[0]
        assert loaded["name"] == "Renamed"
        assert loaded["trigger_count"] == 2
        assert loaded["last_triggered"] == 123.0
        assert loaded["trigger"] == {"type": "time", "config": {"time": "07:00"}}
        assert loaded["enabled"] is True

    def test_record_trigger_on_missing_row(self, storage) -> None:
        assert storage.record_trigger("gone", 1.0) is None

    def test_logs_limit_newest_oldest_first(self, storage) -> None:
        for i in range(5):
            storage.append_log(log_row(f"l{i}", timestamp=float(i)))
        assert [row["id"] for row in storage.get_logs("a1", limit=3)] == ["l2", "l3", "l4"]

    def test_logs_with_equal_timestamps_keep_insert_order(self, storage) -> None:
        for i in range(3):
            storage.append_log(log_row(f"l{i}", timestamp=5.0))
        assert [row["id"] for row in storage.get_logs("a1")] == ["l0", "l1", "l2"]

    def test_delete_automation_optionally_keeps_logs(self, storage) -> None:
        storage.upsert_automation(automation_row("a1"))
        storage.upsert_automation(automation_row("a2"))
        storage.append_log(log_row("l1", "a1"))
        storage.append_log(log_row("l2", "a2"))

        storage.delete_automation("a1", purge_logs=False)
        assert storage.count_rows("automation_logs") == 2
        storage.delete_automation("a2")
        assert [row["id"] for row in storage.get_logs("a1")] == ["l1"]
        assert storage.get_logs("a2") == []

    def test_purge_logs(self, storage) -> None:
        storage.append_log(log_row("old", timestamp=1.0))
        storage.append_log(log_row("new", timestamp=100.0))
        assert storage.purge_logs(50.0) == 1
        assert [row["id"] for row in storage.get_logs("a1")] == ["new"]


def test_unopenable_database_is_storage_error(tmp_path) -> None:
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    with pytest.raises((StorageError, OSError)):
        HubStorage(str(blocker / "hub.db"))


def test_in_memory_database() -> None:
    store = HubStorage(":memory:")
    try:
        assert store.count_rows("devices") == 0
    finally:
        store.close()
