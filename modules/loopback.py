"""
Loopback protocol adapter for virtual devices.
Commands are applied straight back to the registry as state updates.
"""
import logging
from typing import Dict, Any, Optional

from handlers import get_handler

logger = logging.getLogger("modules.loopback")


class LoopbackAdapter:
    protocol = "virtual"

    def __init__(self, registry):
        self.registry = registry
        self.commands_applied = 0

    async def send_command(self, device, command: str, parameters: Dict[str, Any],
                           actor: Optional[str] = None) -> Dict[str, Any]:
        patch = get_handler(device).build_patch(command, parameters)
        new_state = await self.registry.update_state(device.id, patch, actor=actor)
        self.commands_applied += 1
        logger.debug(f"[{device.id}] Loopback {command} applied: {patch}")
        return new_state
