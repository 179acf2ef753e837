"""
Base Command Handler
Translates control commands into state patches for a device type.

Protocol adapters ask the handler for the patch a command produces and
either apply it directly (virtual devices) or publish it to the device
(MQTT devices).
"""
import logging
from typing import Dict, Any, Optional, List

from error_handler import ValidationError

logger = logging.getLogger("handlers.base")

# Registry to map device types to Handler Classes
HANDLER_REGISTRY: Dict[str, type] = {}


def register_handler(*device_types: str):
    """Decorator to register a command handler for one or more device types."""
    def decorator(cls):
        for device_type in device_types:
            HANDLER_REGISTRY[device_type.lower()] = cls
            logger.debug(f"📋 Registered handler {cls.__name__} for device type '{device_type}'")
        cls.DEVICE_TYPES = tuple(device_types)
        return cls
    return decorator


class CommandHandler:
    """
    Base class for device command handlers.

    Subclasses implement ``cmd_<command>(parameters)`` returning the state
    patch the command results in.
    """
    DEVICE_TYPES: tuple = ()

    def __init__(self, device):
        self.device = device

    @property
    def state(self) -> Dict[str, Any]:
        return self.device.state or {}

    def supported_commands(self) -> List[str]:
        return sorted(name[4:] for name in dir(self) if name.startswith("cmd_"))

    def build_patch(self, command: str, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build the state patch for ``command``.

        Raises:
            ValidationError: unknown command or bad parameters
        """
        method = getattr(self, f"cmd_{command}", None)
        if method is None:
            raise ValidationError(
                f"Command '{command}' not supported by {self.device.type} device {self.device.id}",
                {"supported": self.supported_commands()},
            )
        patch = method(parameters or {})
        logger.debug(f"[{self.device.id}] {command} -> {patch}")
        return patch

    # ============================================================
    # SHARED COMMANDS
    # ============================================================

    def cmd_turn_on(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"state": "ON"}

    def cmd_turn_off(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"state": "OFF"}

    def cmd_toggle(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return {"state": "OFF" if self.state.get("state") == "ON" else "ON"}

    # ============================================================
    # PARAMETER HELPERS
    # ============================================================

    def _number(self, parameters: Dict[str, Any], *keys: str,
                minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
        """First numeric value found under ``keys``, clamped to the given range."""
        for key in keys:
            if key in parameters:
                value = parameters[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    try:
                        value = float(value)
                    except (TypeError, ValueError):
                        raise ValidationError(f"Parameter '{key}' must be a number, got {value!r}")
                if minimum is not None:
                    value = max(minimum, value)
                if maximum is not None:
                    value = min(maximum, value)
                return value
        raise ValidationError(f"Missing parameter: one of {', '.join(keys)}")


def get_handler(device) -> CommandHandler:
    """Instantiate the handler for a device, falling back to the generic one."""
    cls = HANDLER_REGISTRY.get((device.type or "").lower()) or HANDLER_REGISTRY.get("*", CommandHandler)
    return cls(device)


def get_handler_registry() -> Dict[str, type]:
    return HANDLER_REGISTRY.copy()
