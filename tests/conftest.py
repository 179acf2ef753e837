"""Pytest configuration and shared fixtures for hub tests."""

from __future__ import annotations

import pytest

from core import DeviceRegistry
from modules.automation import AutomationEngine
from modules.event_bus import EventBus
from modules.loopback import LoopbackAdapter
from modules.storage import HubStorage


@pytest.fixture
def storage(tmp_path):
    """File-backed store in a temporary directory."""
    store = HubStorage(str(tmp_path / "hub.db"))
    yield store
    store.close()


@pytest.fixture
async def bus():
    event_bus = EventBus()
    event_bus.start()
    yield event_bus
    await event_bus.stop()


@pytest.fixture
async def events(bus):
    """Every event published on the bus, in delivery order."""
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
async def registry(storage, bus):
    reg = DeviceRegistry(storage, bus)
    await reg.load()
    reg.attach_adapter("virtual", LoopbackAdapter(reg))
    return reg


@pytest.fixture
async def engine(registry, storage, bus):
    eng = AutomationEngine(registry, storage, bus, execution_timeout=5)
    await eng.load()
    yield eng
    await eng.shutdown()


@pytest.fixture
def settle(bus):
    """Drain the bus and any trigger tasks it spawned, until quiet."""
    async def _settle(engine=None, rounds: int = 5):
        for _ in range(rounds):
            await bus.join()
            if engine is not None:
                await engine.wait_idle()
        await bus.join()
    return _settle


@pytest.fixture
async def light(registry):
    return await registry.register({"name": "Hall Light", "type": "light", "protocol": "virtual"})


@pytest.fixture
async def sensor(registry):
    return await registry.register({
        "name": "Hall Motion",
        "type": "motion_sensor",
        "protocol": "virtual",
        "capabilities": ["motion"],
    })
