"""
Automation API - FastAPI routes for automations, their logs and AI generation.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from error_handler import HubError

logger = logging.getLogger(__name__)


# ============================================================================
# MODELS
# ============================================================================

class AutomationCreateRequest(BaseModel):
    name: str
    description: Optional[str] = ""
    trigger: Dict[str, Any]
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    enabled: bool = True
    created_by: Optional[str] = None


class AutomationUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[Dict[str, Any]] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    actions: Optional[List[Dict[str, Any]]] = None
    enabled: Optional[bool] = None


class GenerateRequest(BaseModel):
    prompt: str
    user_id: Optional[str] = None
    provider: Optional[str] = None


def raise_http(error: HubError):
    raise HTTPException(status_code=error.status_code, detail=error.to_dict())


# ============================================================================
# REGISTRATION
# ============================================================================

def register_automation_routes(app: FastAPI,
                               automation_getter: Union[Any, Callable[[], Any]]):
    def get_engine():
        e = automation_getter() if callable(automation_getter) else automation_getter
        if not e:
            raise HTTPException(503, "Engine not initialised")
        return e

    @app.get("/api/automations", tags=["automations"])
    async def list_automations(enabled: Optional[bool] = None, created_by: Optional[str] = None):
        e = get_engine()
        return [a.to_dict() for a in e.list(enabled=enabled, created_by=created_by)]

    @app.get("/api/automations/stats", tags=["automations"])
    async def get_stats():
        return get_engine().get_stats()

    @app.get("/api/automations/trace", tags=["automations"])
    async def get_trace(automation_id: Optional[str] = None):
        entries = get_engine().get_trace_log()
        if automation_id:
            entries = [x for x in entries if x.get("automation_id") == automation_id]
        return entries

    @app.post("/api/automations/generate", tags=["automations"])
    async def generate(request: GenerateRequest):
        e = get_engine()
        try:
            automation = await e.create_from_natural_language(
                request.prompt, user_id=request.user_id, provider=request.provider,
            )
        except HubError as err:
            raise_http(err)
        return automation.to_dict()

    @app.get("/api/automations/{automation_id}", tags=["automations"])
    async def get_automation(automation_id: str):
        automation = get_engine().get(automation_id)
        if not automation:
            raise HTTPException(404, f"Automation not found: {automation_id}")
        return automation.to_dict()

    @app.post("/api/automations", tags=["automations"])
    async def create(request: AutomationCreateRequest):
        e = get_engine()
        try:
            automation = await e.create(request.model_dump(), created_by=request.created_by)
        except HubError as err:
            raise_http(err)
        return automation.to_dict()

    @app.put("/api/automations/{automation_id}", tags=["automations"])
    async def update(automation_id: str, request: AutomationUpdateRequest):
        e = get_engine()
        updates = request.model_dump(exclude_unset=True)
        if not updates:
            raise HTTPException(400, "No fields to update")
        try:
            automation = await e.update(automation_id, updates)
        except HubError as err:
            raise_http(err)
        return automation.to_dict()

    @app.patch("/api/automations/{automation_id}/toggle", tags=["automations"])
    async def toggle(automation_id: str):
        e = get_engine()
        current = e.get(automation_id)
        if not current:
            raise HTTPException(404, f"Automation not found: {automation_id}")
        try:
            automation = await e.update(automation_id, {"enabled": not current.enabled})
        except HubError as err:
            raise_http(err)
        return automation.to_dict()

    @app.delete("/api/automations/{automation_id}", tags=["automations"])
    async def delete(automation_id: str):
        e = get_engine()
        try:
            await e.delete(automation_id)
        except HubError as err:
            raise_http(err)
        return {"success": True, "automation_id": automation_id}

    @app.post("/api/automations/{automation_id}/trigger", tags=["automations"])
    async def trigger(automation_id: str):
        e = get_engine()
        automation = e.get(automation_id)
        if not automation:
            raise HTTPException(404, f"Automation not found: {automation_id}")
        if not automation.enabled:
            raise HTTPException(409, f"Automation is disabled: {automation_id}")
        e.fire(automation_id)
        return {"success": True, "automation_id": automation_id, "queued": True}

    @app.get("/api/automations/{automation_id}/logs", tags=["automations"])
    async def logs(automation_id: str, limit: int = 50):
        e = get_engine()
        if not e.get(automation_id):
            raise HTTPException(404, f"Automation not found: {automation_id}")
        try:
            entries = await e.get_logs(automation_id, limit=limit)
        except HubError as err:
            raise_http(err)
        return [entry.to_dict() for entry in entries]

    logger.info("Automation API routes registered")
