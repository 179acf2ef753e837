"""
HVAC command handlers - thermostats and TRVs.
"""
import logging
from typing import Any, Dict

from error_handler import ValidationError
from .base import CommandHandler, register_handler

logger = logging.getLogger("handlers.hvac")


@register_handler("thermostat", "trv", "hvac")
class ThermostatHandler(CommandHandler):
    """
    Target temperature in °C, clamped to the heating range.
    turn_on / turn_off map to heat / off system modes.
    """
    SYSTEM_MODES = ("off", "auto", "heat", "cool")

    MIN_HEAT = 5.0
    MAX_HEAT = 30.0

    def cmd_set_temperature(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        temperature = self._number(parameters, "temperature", "target_temp", "value",
                                   minimum=self.MIN_HEAT, maximum=self.MAX_HEAT)
        return {"target_temp": float(temperature)}

    def cmd_set_mode(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        mode = str(parameters.get("mode", parameters.get("value", ""))).lower()
        if mode not in self.SYSTEM_MODES:
            raise ValidationError(f"Unsupported HVAC mode: {mode!r}", {"supported": list(self.SYSTEM_MODES)})
        return {"system_mode": mode, **self._hvac_action(mode)}

    def cmd_turn_on(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"system_mode": "heat", **self._hvac_action("heat")}

    def cmd_turn_off(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"system_mode": "off", **self._hvac_action("off")}

    def cmd_toggle(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if self.state.get("system_mode", "off") == "off":
            return self.cmd_turn_on(parameters)
        return self.cmd_turn_off(parameters)

    def _hvac_action(self, mode: str) -> Dict[str, Any]:
        """Derive hvac_action (heating, idle, off) from the new mode and the last readings."""
        if mode == "off":
            return {"hvac_action": "off"}
        current = self.state.get("temperature")
        target = self.state.get("target_temp")
        if mode == "heat" and isinstance(current, (int, float)) and isinstance(target, (int, float)):
            return {"hvac_action": "heating" if current < target else "idle"}
        return {"hvac_action": "idle"}
