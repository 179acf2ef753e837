"""
Device records - the registry's in-memory view of a physical or virtual device.
"""
import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Set

# Fields a caller may change through DeviceRegistry.update_info
UPDATABLE_INFO_FIELDS = (
    'name', 'room_id', 'model', 'manufacturer',
    'firmware_version', 'capabilities', 'metadata',
)


def new_id() -> str:
    return uuid.uuid4().hex


def normalise_address(address: Optional[str]) -> Optional[str]:
    """Addresses are compared case-insensitively; blank means none."""
    if address is None:
        return None
    address = str(address).strip().lower()
    return address or None


@dataclass
class Device:
    """
    A registered device.

    ``state`` is an open map merged key by key on every update.
    """
    id: str
    name: str
    type: str
    protocol: str
    address: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    room_id: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)
    capabilities: Set[str] = field(default_factory=set)
    metadata: Dict[str, Any] = field(default_factory=dict)
    online: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_seen: Optional[float] = None

    def snapshot(self) -> "Device":
        """Deep copy handed out to callers so they cannot mutate the registry."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "protocol": self.protocol,
            "address": self.address,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "firmware_version": self.firmware_version,
            "room_id": self.room_id,
            "state": copy.deepcopy(self.state),
            "capabilities": sorted(self.capabilities),
            "metadata": copy.deepcopy(self.metadata),
            "online": self.online,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            protocol=data["protocol"],
            address=data.get("address"),
            manufacturer=data.get("manufacturer"),
            model=data.get("model"),
            firmware_version=data.get("firmware_version"),
            room_id=data.get("room_id"),
            state=dict(data.get("state") or {}),
            capabilities=set(data.get("capabilities") or []),
            metadata=dict(data.get("metadata") or {}),
            online=bool(data.get("online", True)),
            created_at=data.get("created_at") or time.time(),
            updated_at=data.get("updated_at") or time.time(),
            last_seen=data.get("last_seen"),
        )


@dataclass(frozen=True)
class DeviceHistoryEntry:
    """Full resulting state of one update_state call."""
    id: str
    device_id: str
    state: Dict[str, Any]
    timestamp: float
    triggered_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "state": copy.deepcopy(self.state),
            "timestamp": self.timestamp,
            "triggered_by": self.triggered_by,
        }
