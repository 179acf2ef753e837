"""
Lighting command handlers.
Handles: on/off, brightness (0-100 %) and colour temperature for bulbs and LED strips.
"""
import logging
from typing import Any, Dict

from error_handler import ValidationError
from .base import CommandHandler, register_handler

logger = logging.getLogger("handlers.lighting")


@register_handler("light", "bulb", "led_strip", "dimmer")
class LightHandler(CommandHandler):
    """
    Brightness is a percentage. Colour temperature is accepted in mireds
    (``colorTemp``/``color_temp``) or Kelvin (``kelvin``) and stored as both.
    """

    # Default limits
    MIN_MIREDS = 153  # ~6500K (cool white)
    MAX_MIREDS = 500  # ~2000K (warm white)

    def cmd_turn_on(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        patch = {"state": "ON"}
        if "brightness" in parameters:
            patch["brightness"] = round(self._number(parameters, "brightness", minimum=0, maximum=100))
        return patch

    def cmd_set_brightness(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        brightness = round(self._number(parameters, "brightness", "level", "value", minimum=0, maximum=100))
        # Zero brightness switches the light off
        return {"brightness": brightness, "state": "ON" if brightness > 0 else "OFF"}

    def cmd_set_color_temp(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if "kelvin" in parameters:
            kelvin = self._number(parameters, "kelvin", minimum=2000, maximum=6500)
            mireds = round(1000000 / kelvin)
        else:
            mireds = self._number(parameters, "colorTemp", "color_temp", "value")
        mireds = int(max(self.MIN_MIREDS, min(self.MAX_MIREDS, mireds)))
        kelvin = round(1000000 / mireds)
        logger.debug(f"[{self.device.id}] Color temp: {mireds} mireds = {kelvin}K")
        return {"colorTemp": mireds, "color_temp_kelvin": kelvin}

    def cmd_set_color(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        color = parameters.get("color")
        if color is None and "x" in parameters and "y" in parameters:
            color = {"x": parameters["x"], "y": parameters["y"]}
        if color is None:
            color = {k: parameters[k] for k in ("hue", "saturation") if k in parameters} or None
        if color is None:
            raise ValidationError("set_color needs color, x/y or hue/saturation")
        return {"color": color}
