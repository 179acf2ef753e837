"""
Device State Registry
=====================
Authoritative in-memory device table, mirrored to storage.

- Every mutation persists first, then updates memory, then publishes an event
- update_state is serialised per device; different devices interleave freely
- Reads return copies so callers never mutate registry state
"""
import asyncio
import logging
import time
from typing import Dict, Any, Optional, List

from device import Device, DeviceHistoryEntry, UPDATABLE_INFO_FIELDS, new_id, normalise_address
from error_handler import ValidationError, NotFoundError, ProtocolError, HubError
from modules.event_bus import EventBus, EventType
from modules.storage import HubStorage

logger = logging.getLogger("core")


class DeviceRegistry:
    """
    Device registry with protocol adapter dispatch.

    Adapters are attached per protocol name and must provide
    ``async send_command(device, command, parameters, actor)``.
    """

    def __init__(self, storage: HubStorage, bus: EventBus):
        self.storage = storage
        self.bus = bus

        self.devices: Dict[str, Device] = {}
        self._address_index: Dict[str, str] = {}  # address -> id
        self._locks: Dict[str, asyncio.Lock] = {}
        self._adapters: Dict[str, Any] = {}

    async def _run(self, func, *args):
        """Run a blocking storage call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def load(self) -> int:
        """Load persisted devices into memory."""
        rows = await self._run(self.storage.load_devices)
        self.devices.clear()
        self._address_index.clear()
        for row in rows:
            device = Device.from_dict(row)
            self.devices[device.id] = device
            if device.address:
                self._address_index[device.address] = device.id
        logger.info(f"Loaded {len(self.devices)} devices from storage")
        return len(self.devices)

    def attach_adapter(self, protocol: str, adapter):
        self._adapters[protocol] = adapter
        logger.info(f"Protocol adapter attached: {protocol} -> {type(adapter).__name__}")

    def detach_adapter(self, protocol: str):
        self._adapters.pop(protocol, None)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    async def register(self, spec: Dict[str, Any]) -> Device:
        """
        Register a new device.

        Raises:
            ValidationError: missing name/type/protocol or address already in use
        """
        for key in ("name", "type", "protocol"):
            value = spec.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Device field '{key}' is required")

        address = normalise_address(spec.get("address"))
        if address and address in self._address_index:
            raise ValidationError(
                f"Address {address} already registered",
                {"device_id": self._address_index[address]},
            )

        now = time.time()
        device = Device(
            id=new_id(),
            name=spec["name"].strip(),
            type=spec["type"].strip(),
            protocol=spec["protocol"].strip(),
            address=address,
            manufacturer=spec.get("manufacturer"),
            model=spec.get("model"),
            firmware_version=spec.get("firmware_version"),
            room_id=spec.get("room_id"),
            state={},
            capabilities=set(spec.get("capabilities") or []),
            metadata=dict(spec.get("metadata") or {}),
            online=True,
            created_at=now,
            updated_at=now,
        )

        # Address reserved before the write, released if the write fails
        if address:
            self._address_index[address] = device.id
        try:
            await self._run(self.storage.insert_device, device.to_dict())
        except Exception:
            if address:
                self._address_index.pop(address, None)
            raise

        self.devices[device.id] = device

        logger.info(f"[{device.id}] ✅ Registered {device.protocol} {device.type} '{device.name}'")
        self.bus.publish(EventType.DEVICE_REGISTERED, {"device": device.to_dict()})
        return device.snapshot()

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, device_id: str) -> Optional[Device]:
        device = self.devices.get(device_id)
        return device.snapshot() if device else None

    def get_by_address(self, address: str) -> Optional[Device]:
        device_id = self._address_index.get(normalise_address(address) or "")
        return self.get(device_id) if device_id else None

    def list(self, protocol: Optional[str] = None, type: Optional[str] = None,
             room_id: Optional[str] = None, online: Optional[bool] = None) -> List[Device]:
        result = []
        for device in self.devices.values():
            if protocol is not None and device.protocol != protocol:
                continue
            if type is not None and device.type != type:
                continue
            if room_id is not None and device.room_id != room_id:
                continue
            if online is not None and device.online != online:
                continue
            result.append(device.snapshot())
        return result

    def statistics(self) -> Dict[str, Any]:
        stats = {"total": 0, "online": 0, "offline": 0, "by_protocol": {}, "by_type": {}}
        for device in self.devices.values():
            stats["total"] += 1
            if device.online:
                stats["online"] += 1
            else:
                stats["offline"] += 1
            stats["by_protocol"][device.protocol] = stats["by_protocol"].get(device.protocol, 0) + 1
            stats["by_type"][device.type] = stats["by_type"].get(device.type, 0) + 1
        return stats

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def update_state(self, device_id: str, partial: Dict[str, Any],
                           actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Merge ``partial`` into the device state.

        Persists the merged state and a history entry together, then updates
        memory and publishes device.state_changed. Returns the merged state.

        Raises:
            NotFoundError: unknown device id
        """
        if device_id not in self.devices:
            raise NotFoundError(f"Device {device_id} not found")
        if not isinstance(partial, dict):
            raise ValidationError("State update must be an object")

        async with self._lock_for(device_id):
            device = self.devices.get(device_id)
            if device is None:
                # Deleted while we were waiting for the lock
                raise NotFoundError(f"Device {device_id} not found")

            old_state = dict(device.state)
            new_state = {**old_state, **partial}
            now = time.time()
            entry = DeviceHistoryEntry(
                id=new_id(),
                device_id=device_id,
                state=dict(new_state),
                timestamp=now,
                triggered_by=actor,
            )

            await self._run(self.storage.save_state, device_id, new_state, now, entry.to_dict())

            was_offline = not device.online
            device.state = new_state
            device.online = True
            device.last_seen = now
            device.updated_at = now

            logger.debug(f"[{device_id}] State {partial} (by {actor or 'system'})")
            if was_offline:
                self.bus.publish(EventType.DEVICE_ONLINE, {"device_id": device_id})
            self.bus.publish(EventType.DEVICE_STATE_CHANGED, {
                "device_id": device_id,
                "old_state": old_state,
                "new_state": dict(new_state),
                "triggered_by": actor,
            })
            return dict(new_state)

    async def update_info(self, device_id: str, fields: Dict[str, Any]) -> Device:
        """
        Update descriptive fields. The address and protocol are immutable.
        """
        device = self.devices.get(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")

        updates = {k: v for k, v in (fields or {}).items() if k in UPDATABLE_INFO_FIELDS}
        if not updates:
            raise ValidationError(
                "No updatable fields given",
                {"allowed": list(UPDATABLE_INFO_FIELDS)},
            )
        if "name" in updates and (not isinstance(updates["name"], str) or not updates["name"].strip()):
            raise ValidationError("Device name cannot be empty")
        if "capabilities" in updates:
            updates["capabilities"] = sorted(set(updates["capabilities"] or []))
        if "metadata" in updates:
            updates["metadata"] = dict(updates["metadata"] or {})

        now = time.time()
        await self._run(self.storage.update_device_info, device_id, updates, now)

        for key, value in updates.items():
            setattr(device, key, set(value) if key == "capabilities" else value)
        device.updated_at = now

        logger.info(f"[{device_id}] Info updated: {', '.join(updates)}")
        self.bus.publish(EventType.DEVICE_UPDATED, {"device_id": device_id, "changes": updates})
        return device.snapshot()

    async def delete(self, device_id: str):
        """Remove a device and its history."""
        device = self.devices.get(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")

        async with self._lock_for(device_id):
            if device_id not in self.devices:
                raise NotFoundError(f"Device {device_id} not found")
            await self._run(self.storage.delete_device, device_id)
            self.devices.pop(device_id, None)
            if device.address:
                self._address_index.pop(device.address, None)

        self._locks.pop(device_id, None)
        logger.warning(f"[{device_id}] Device removed: {device.name}")
        self.bus.publish(EventType.DEVICE_DELETED, {"device_id": device_id, "name": device.name})

    async def mark_online(self, device_id: str):
        await self._set_online(device_id, True)

    async def mark_offline(self, device_id: str):
        await self._set_online(device_id, False)

    async def _set_online(self, device_id: str, online: bool):
        device = self.devices.get(device_id)
        if device is None:
            logger.debug(f"[{device_id}] Availability change for unknown device ignored")
            return

        now = time.time()
        await self._run(self.storage.set_online, device_id, online, now)
        device.online = online
        device.updated_at = now
        if online:
            device.last_seen = now

        logger.info(f"[{device_id}] Availability changed to {'Online' if online else 'Offline'}")
        self.bus.publish(EventType.DEVICE_ONLINE if online else EventType.DEVICE_OFFLINE, {"device_id": device_id})

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def control_device(self, device_id: str, command: str,
                             parameters: Optional[Dict[str, Any]] = None,
                             actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Dispatch a command to the device's protocol adapter.

        Raises:
            NotFoundError: unknown device id
            ProtocolError: the adapter failed
        """
        device = self.devices.get(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        if not command:
            raise ValidationError("Command is required")

        parameters = dict(parameters or {})
        self.bus.publish(EventType.DEVICE_CONTROL, {
            "device_id": device_id,
            "protocol": device.protocol,
            "address": device.address,
            "command": command,
            "parameters": parameters,
            "actor": actor,
        })

        adapter = self._adapters.get(device.protocol)
        acknowledged = False
        if adapter is not None:
            try:
                await adapter.send_command(device.snapshot(), command, parameters, actor)
                acknowledged = True
            except ProtocolError:
                raise
            except HubError as e:
                raise ProtocolError(f"{device.protocol} adapter rejected {command}: {e.message}", e.details) from e
            except Exception as e:
                logger.error(f"[{device_id}] Command {command} failed: {e}")
                raise ProtocolError(f"{device.protocol} adapter failed: {e}") from e
        else:
            logger.debug(f"[{device_id}] No adapter for protocol '{device.protocol}', command published only")

        logger.info(f"[{device_id}] ⚡ {command} {parameters or ''} (by {actor or 'system'})")
        return {
            "success": True,
            "device_id": device_id,
            "command": command,
            "parameters": parameters,
            "acknowledged": acknowledged,
        }

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def get_history(self, device_id: str, limit: int = 100) -> List[DeviceHistoryEntry]:
        """Most recent ``limit`` history entries, oldest first."""
        rows = await self._run(self.storage.get_history, device_id, limit)
        return [DeviceHistoryEntry(**row) for row in rows]

    async def purge_history(self, max_age_days: float) -> int:
        before = time.time() - max_age_days * 86400
        removed = await self._run(self.storage.purge_history, before)
        if removed:
            logger.info(f"🧹 Purged {removed} device history entries older than {max_age_days} days")
        return removed
