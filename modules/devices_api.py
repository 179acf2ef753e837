"""
Devices API - FastAPI routes for the device registry.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from error_handler import HubError
from modules.automation_api import raise_http

logger = logging.getLogger(__name__)


class DeviceCreateRequest(BaseModel):
    name: str
    type: str
    protocol: str
    address: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    room_id: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeviceUpdateRequest(BaseModel):
    name: Optional[str] = None
    room_id: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    firmware_version: Optional[str] = None
    capabilities: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class ControlRequest(BaseModel):
    command: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


class StateRequest(BaseModel):
    state: Dict[str, Any]
    actor: Optional[str] = None


def register_device_routes(app: FastAPI, registry_getter: Union[Any, Callable[[], Any]]):
    def get_registry():
        r = registry_getter() if callable(registry_getter) else registry_getter
        if not r:
            raise HTTPException(503, "Registry not initialised")
        return r

    @app.get("/api/devices", tags=["devices"])
    async def list_devices(protocol: Optional[str] = None, type: Optional[str] = None,
                           room_id: Optional[str] = None, online: Optional[bool] = None):
        r = get_registry()
        return [d.to_dict() for d in r.list(protocol=protocol, type=type, room_id=room_id, online=online)]

    @app.get("/api/devices/stats", tags=["devices"])
    async def device_stats():
        return get_registry().statistics()

    @app.post("/api/devices", tags=["devices"])
    async def register_device(request: DeviceCreateRequest):
        try:
            device = await get_registry().register(request.model_dump())
        except HubError as err:
            raise_http(err)
        return device.to_dict()

    @app.get("/api/devices/{device_id}", tags=["devices"])
    async def get_device(device_id: str):
        device = get_registry().get(device_id)
        if not device:
            raise HTTPException(404, f"Device not found: {device_id}")
        return device.to_dict()

    @app.put("/api/devices/{device_id}", tags=["devices"])
    async def update_device(device_id: str, request: DeviceUpdateRequest):
        try:
            device = await get_registry().update_info(device_id, request.model_dump(exclude_unset=True))
        except HubError as err:
            raise_http(err)
        return device.to_dict()

    @app.delete("/api/devices/{device_id}", tags=["devices"])
    async def delete_device(device_id: str):
        try:
            await get_registry().delete(device_id)
        except HubError as err:
            raise_http(err)
        return {"success": True, "device_id": device_id}

    @app.post("/api/devices/{device_id}/state", tags=["devices"])
    async def update_state(device_id: str, request: StateRequest):
        try:
            state = await get_registry().update_state(device_id, request.state, actor=request.actor or "api")
        except HubError as err:
            raise_http(err)
        return {"device_id": device_id, "state": state}

    @app.post("/api/devices/{device_id}/control", tags=["devices"])
    async def control(device_id: str, request: ControlRequest):
        try:
            return await get_registry().control_device(
                device_id, request.command, request.parameters, actor=request.actor or "api",
            )
        except HubError as err:
            raise_http(err)

    @app.get("/api/devices/{device_id}/history", tags=["devices"])
    async def history(device_id: str, limit: int = 100):
        r = get_registry()
        if not r.get(device_id):
            raise HTTPException(404, f"Device not found: {device_id}")
        try:
            entries = await r.get_history(device_id, limit=limit)
        except HubError as err:
            raise_http(err)
        return [entry.to_dict() for entry in entries]

    logger.info("Device API routes registered")
