"""
Smart Hub - Main Application
FastAPI-based web server wiring the device registry, automation engine,
trigger scheduler and notification bus together.
"""
import uvicorn
import os
import logging
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
import queue
import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from pydantic import BaseModel

from config import load_config, get_conf, get_section
from core import DeviceRegistry
from error_handler import HubError, get_error_stats
from json_helpers import safe_json_dumps
from mqtt import MQTTService
from modules.ai import AIService
from modules.automation import AutomationEngine
from modules.automation_api import register_automation_routes, raise_http
from modules.devices_api import register_device_routes
from modules.event_bus import EventBus, Event
from modules.loopback import LoopbackAdapter
from modules.storage import HubStorage

logger = logging.getLogger('main')

VERSION = "1.0.0"


# ============================================================================
# LOGGING CONFIGURATION (NON-BLOCKING)
# ============================================================================

def setup_logging(log_config: Dict[str, Any]) -> QueueListener:
    """
    Route all records through a queue; file and console writes happen on
    the listener thread.
    """
    log_file = log_config.get('file', 'logs/hub.log')
    os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)

    log_queue = queue.Queue(-1)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=log_config.get('max_bytes', 1024 * 1024),
        backupCount=log_config.get('backup_count', 3),
    )
    console_handler = logging.StreamHandler()

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    listener = QueueListener(log_queue, file_handler, console_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_config.get('level', 'INFO'))
    root_logger.handlers = []
    root_logger.addHandler(QueueHandler(log_queue))

    logging.getLogger('handlers').setLevel(logging.INFO)
    logging.getLogger('modules.event_bus').setLevel(logging.INFO)

    return listener


# ============================================================================
# PYDANTIC MODELS FOR API
# ============================================================================

class VoiceCommandRequest(BaseModel):
    command: str
    user_id: Optional[str] = None
    provider: Optional[str] = None


# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """Manages WebSocket connections for real-time updates."""

    def __init__(self):
        self.active_connections = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active_connections.append(ws)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, ws: WebSocket):
        if ws in self.active_connections:
            self.active_connections.remove(ws)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients with safe JSON serialization."""
        if not self.active_connections:
            return

        json_msg = safe_json_dumps(message)

        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_text(json_msg)
            except Exception:
                disconnected.append(connection)

        for ws in disconnected:
            self.disconnect(ws)


manager = ConnectionManager()


async def relay_event(event: Event):
    """Bus subscriber fanning every event out to WebSocket clients."""
    await manager.broadcast(event.to_dict())


# ============================================================================
# SERVICES
# ============================================================================

class HubServices:
    storage: Optional[HubStorage] = None
    bus: Optional[EventBus] = None
    registry: Optional[DeviceRegistry] = None
    engine: Optional[AutomationEngine] = None
    ai: Optional[AIService] = None
    mqtt: Optional[MQTTService] = None
    cleanup_task: Optional[asyncio.Task] = None
    started_at: Optional[float] = None


services = HubServices()


async def retention_loop(interval: float, history_days: float, log_days: float):
    """Periodically purge old device history and automation logs."""
    while True:
        try:
            await asyncio.sleep(interval)
            await services.registry.purge_history(history_days)
            await services.engine.purge_logs(log_days)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}")


# ============================================================================
# APPLICATION LIFECYCLE
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown handling."""
    config = load_config()
    log_listener = setup_logging(config.get('logging', {}))
    log_listener.start()
    logger.info(f"Starting Smart Hub {VERSION} (Threaded Logging Enabled)...")

    services.storage = HubStorage(get_conf('hub', 'db_path', './data/hub.db'))
    services.bus = EventBus()
    services.registry = DeviceRegistry(services.storage, services.bus)
    await services.registry.load()
    services.registry.attach_adapter(LoopbackAdapter.protocol, LoopbackAdapter(services.registry))

    services.ai = AIService(get_section('ai'))
    services.engine = AutomationEngine(
        services.registry,
        services.storage,
        services.bus,
        ai_service=services.ai,
        execution_timeout=get_conf('automation', 'execution_timeout', 300),
        purge_logs_on_delete=get_conf('automation', 'purge_logs_on_delete', True),
        timezone=get_conf('scheduler', 'timezone', 'UTC'),
    )

    services.bus.subscribe(relay_event)
    await services.engine.load()
    services.bus.start()

    if get_conf('mqtt', 'enabled', False):
        services.mqtt = MQTTService(
            services.registry,
            broker_host=get_conf('mqtt', 'broker_host', 'localhost'),
            port=get_conf('mqtt', 'broker_port', 1883),
            username=get_conf('mqtt', 'username'),
            password=get_conf('mqtt', 'password'),
            base_topic=get_conf('mqtt', 'base_topic', 'smarthub'),
            qos=get_conf('mqtt', 'qos', 0),
        )
        services.registry.attach_adapter(MQTTService.protocol, services.mqtt)
        try:
            await services.mqtt.start()
        except Exception as e:
            logger.warning(f"MQTT connection failed: {e}")

    cleanup_interval = get_conf('retention', 'cleanup_interval', 3600)
    if cleanup_interval > 0:
        services.cleanup_task = asyncio.create_task(retention_loop(
            cleanup_interval,
            get_conf('retention', 'history_days', 30),
            get_conf('retention', 'log_days', 30),
        ))

    services.started_at = time.time()
    logger.info("✅ Smart Hub ready")

    yield  # Application runs here

    logger.info("Shutting down Smart Hub...")
    if services.cleanup_task:
        services.cleanup_task.cancel()
    await services.engine.shutdown()
    if services.mqtt:
        await services.mqtt.stop()
        services.mqtt = None
    await services.bus.stop()
    services.storage.close()

    log_listener.stop()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Smart Hub",
    description="Device registry and automation engine for a smart home",
    version=VERSION,
    lifespan=lifespan
)

register_device_routes(app, lambda: services.registry)
register_automation_routes(app, lambda: services.engine)


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "timestamp": time.time(),
        "version": VERSION,
        "uptime": time.time() - services.started_at if services.started_at else 0,
        "devices": services.registry.statistics() if services.registry else {},
        "automations": services.engine.get_stats() if services.engine else {},
        "bus": dict(services.bus.stats) if services.bus else {},
        "mqtt": services.mqtt.get_status() if services.mqtt else {"connected": False},
        "retries": get_error_stats(),
    }


# ============================================================================
# VOICE
# ============================================================================

@app.post("/api/voice/command")
async def voice_command(request: VoiceCommandRequest):
    """Classify a spoken command and carry out device control intents."""
    if not services.ai or not services.registry:
        raise HTTPException(503, "Services not initialised")

    devices = services.registry.list()
    context = {"devices": [{"id": d.id, "name": d.name, "type": d.type, "state": d.state} for d in devices]}
    try:
        parsed = await services.ai.process_voice_command(request.command, context, provider=request.provider)
    except HubError as err:
        raise_http(err)

    result = {"command": request.command, **parsed}
    entities = parsed.get("entities") or {}
    if parsed.get("intent") == "control" and entities.get("device") and entities.get("action"):
        wanted = str(entities["device"]).strip().lower()
        target = next((d for d in devices if d.id == entities["device"] or d.name.lower() == wanted), None)
        if target is None:
            result["executed"] = False
            result["response"] = f"I couldn't find a device called {entities['device']}."
        else:
            parameters = {}
            if entities.get("value") is not None:
                parameters["value"] = entities["value"]
            try:
                result["result"] = await services.registry.control_device(
                    target.id, entities["action"], parameters, actor=request.user_id or "voice",
                )
                result["executed"] = True
            except HubError as err:
                logger.warning(f"Voice command failed: {err}")
                result["executed"] = False
                result["error"] = err.to_dict()
    return result


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """WebSocket endpoint for real-time updates."""
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        manager.disconnect(ws)
    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
        manager.disconnect(ws)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    load_config()
    uvicorn.run(
        app,
        host=get_conf('web', 'host', '0.0.0.0'),
        port=get_conf('web', 'port', 8000),
        log_level="info",
    )
