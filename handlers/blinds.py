"""
Window covering command handlers - blinds, shades, curtains.
Position is 0 (closed) to 100 (open).
"""
import logging
from typing import Any, Dict

from .base import CommandHandler, register_handler

logger = logging.getLogger("handlers.blinds")


@register_handler("cover", "blind", "shade", "curtain")
class CoverHandler(CommandHandler):

    def cmd_open(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"position": 100, "state": "OPEN"}

    def cmd_close(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"position": 0, "state": "CLOSED"}

    def cmd_stop(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        position = self.state.get("position")
        return {"state": self._state_for(position) if isinstance(position, (int, float)) else "STOPPED"}

    def cmd_set_position(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        position = round(self._number(parameters, "position", "value", minimum=0, maximum=100))
        return {"position": position, "state": self._state_for(position)}

    cmd_turn_on = cmd_open
    cmd_turn_off = cmd_close

    def cmd_toggle(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if self.state.get("position", 0) > 0:
            return self.cmd_close(parameters)
        return self.cmd_open(parameters)

    @staticmethod
    def _state_for(position) -> str:
        return "CLOSED" if position <= 0 else "OPEN"
