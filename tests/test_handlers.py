"""Tests for command handlers."""

from __future__ import annotations

import pytest

from device import Device
from error_handler import ValidationError
from handlers import get_handler, get_handler_registry
from handlers.generic import GenericCommandHandler
from handlers.lighting import LightHandler


def device(device_type, **state):
    return Device(id="d1", name="Test", type=device_type, protocol="virtual", state=state)


class TestRegistry:
    """Tests for handler lookup."""

    def test_known_types(self) -> None:
        registry = get_handler_registry()
        assert registry["light"] is LightHandler
        assert registry["bulb"] is LightHandler
        assert "thermostat" in registry

    def test_fallback_is_generic(self) -> None:
        assert isinstance(get_handler(device("garage_door")), GenericCommandHandler)


class TestLight:
    """Tests for LightHandler."""

    def test_on_off_toggle(self) -> None:
        assert get_handler(device("light")).build_patch("turn_on") == {"state": "ON"}
        assert get_handler(device("light", state="ON")).build_patch("toggle") == {"state": "OFF"}
        assert get_handler(device("light", state="OFF")).build_patch("toggle") == {"state": "ON"}

    def test_brightness_clamped(self) -> None:
        handler = get_handler(device("light"))
        assert handler.build_patch("set_brightness", {"brightness": 140}) == {"brightness": 100, "state": "ON"}
        assert handler.build_patch("set_brightness", {"value": 0}) == {"brightness": 0, "state": "OFF"}
        assert handler.build_patch("turn_on", {"brightness": 30}) == {"state": "ON", "brightness": 30}

    def test_color_temp(self) -> None:
        handler = get_handler(device("light"))
        assert handler.build_patch("set_color_temp", {"kelvin": 4000}) == {"colorTemp": 250, "color_temp_kelvin": 4000}
        assert handler.build_patch("set_color_temp", {"colorTemp": 900})["colorTemp"] == 500

    def test_bad_parameters(self) -> None:
        handler = get_handler(device("light"))
        with pytest.raises(ValidationError):
            handler.build_patch("set_brightness", {"brightness": "bright"})
        with pytest.raises(ValidationError):
            handler.build_patch("set_brightness", {})
        with pytest.raises(ValidationError):
            handler.build_patch("set_color", {})


class TestOtherTypes:
    """Tests for thermostat, lock, cover and generic handlers."""

    def test_thermostat(self) -> None:
        handler = get_handler(device("thermostat", temperature=18.0, target_temp=21.0))
        assert handler.build_patch("set_temperature", {"temperature": 40}) == {"target_temp": 30.0}
        assert handler.build_patch("turn_on") == {"system_mode": "heat", "hvac_action": "heating"}
        assert handler.build_patch("turn_off") == {"system_mode": "off", "hvac_action": "off"}
        with pytest.raises(ValidationError):
            handler.build_patch("set_mode", {"mode": "turbo"})

    def test_lock(self) -> None:
        handler = get_handler(device("lock", lock_state="LOCKED"))
        assert handler.build_patch("toggle") == {"lock_state": "UNLOCKED"}
        assert handler.build_patch("turn_on") == {"lock_state": "LOCKED"}

    def test_cover(self) -> None:
        handler = get_handler(device("blind", position=40))
        assert handler.build_patch("set_position", {"position": 0}) == {"position": 0, "state": "CLOSED"}
        assert handler.build_patch("toggle") == {"position": 0, "state": "CLOSED"}
        assert handler.build_patch("stop") == {"state": "OPEN"}

    def test_generic_set_property(self) -> None:
        handler = get_handler(device("fan"))
        assert handler.build_patch("set_speed", {"value": 3}) == {"speed": 3}
        assert handler.build_patch("set_speed", {"speed": 2}) == {"speed": 2}
        assert handler.build_patch("turn_on") == {"state": "ON"}
        with pytest.raises(ValidationError):
            handler.build_patch("set_speed", {})
        with pytest.raises(ValidationError):
            handler.build_patch("dance")
