"""
Switch and plug command handlers.
"""
import logging

from .base import CommandHandler, register_handler

logger = logging.getLogger("handlers.switches")


@register_handler("switch", "outlet", "plug", "relay")
class SwitchHandler(CommandHandler):
    """On/off devices. Uses the shared turn_on / turn_off / toggle commands."""
    pass


@register_handler("lock")
class LockHandler(CommandHandler):
    """Door locks report ``lock_state`` instead of ``state``."""

    def cmd_lock(self, parameters):
        return {"lock_state": "LOCKED"}

    def cmd_unlock(self, parameters):
        return {"lock_state": "UNLOCKED"}

    def cmd_toggle(self, parameters):
        if self.state.get("lock_state") == "LOCKED":
            return self.cmd_unlock(parameters)
        return self.cmd_lock(parameters)

    # Locks have no power state
    cmd_turn_on = cmd_lock
    cmd_turn_off = cmd_unlock
