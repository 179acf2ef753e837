# handlers/generic.py
import logging
from typing import Any, Dict

from error_handler import ValidationError
from .base import CommandHandler, register_handler

logger = logging.getLogger("handlers.generic")


@register_handler("*")
class GenericCommandHandler(CommandHandler):
    """
    Fallback handler for device types without a dedicated handler.

    Besides on/off/toggle it understands ``set_<property>`` commands, which
    write ``parameters["value"]`` (or the single parameter given) to that
    state property.
    """

    def build_patch(self, command: str, parameters: Dict[str, Any] = None) -> Dict[str, Any]:
        parameters = parameters or {}
        if not hasattr(self, f"cmd_{command}") and command.startswith("set_") and len(command) > 4:
            prop = command[4:]
            if "value" in parameters:
                value = parameters["value"]
            elif prop in parameters:
                value = parameters[prop]
            elif len(parameters) == 1:
                value = next(iter(parameters.values()))
            else:
                raise ValidationError(f"Command '{command}' needs a 'value' parameter")
            logger.debug(f"[{self.device.id}] generic {command} -> {prop}={value!r}")
            return {prop: value}
        return super().build_patch(command, parameters)
