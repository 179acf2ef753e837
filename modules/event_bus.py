"""
Notification Bus
================
Typed publish/subscribe channel between the device registry, the automation
engine and outer collaborators (WebSocket relay, protocol adapters).

Every subscriber owns a FIFO queue drained by its own worker task, so:
- delivery order per subscriber equals publish order
- publishing never blocks on a slow subscriber
- a failing handler is logged and does not affect other subscribers
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Callable, List, Optional, Set

logger = logging.getLogger("modules.event_bus")


class EventType(str, Enum):
    DEVICE_REGISTERED = "device.registered"
    DEVICE_UPDATED = "device.updated"
    DEVICE_STATE_CHANGED = "device.state_changed"
    DEVICE_DELETED = "device.deleted"
    DEVICE_ONLINE = "device.online"
    DEVICE_OFFLINE = "device.offline"
    DEVICE_CONTROL = "device.control"
    AUTOMATION_CREATED = "automation.created"
    AUTOMATION_UPDATED = "automation.updated"
    AUTOMATION_DELETED = "automation.deleted"
    AUTOMATION_TRIGGERED = "automation.triggered"
    AUTOMATION_ERROR = "automation.error"
    NOTIFICATION = "notification"


@dataclass
class Event:
    """
    A hub event.

    Attributes:
        type: One of EventType
        payload: Event-specific data
        timestamp: Publish time (epoch seconds)
    """
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload, "timestamp": self.timestamp}


EventHandler = Callable[[Event], Any]


class _Subscription:
    """A handler with its own queue and worker."""

    def __init__(self, handler: EventHandler, event_types: Optional[Set[EventType]]):
        self.handler = handler
        self.event_types = event_types
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))

    def wants(self, event: Event) -> bool:
        return self.event_types is None or event.type in self.event_types


class EventBus:
    """
    Asynchronous event bus.

    Handlers may be plain callables or coroutine functions.
    """

    def __init__(self):
        self._subscriptions: List[_Subscription] = []
        self._running = False
        self.stats = {"published": 0, "delivered": 0, "handler_errors": 0}

    def start(self):
        """Start one worker per subscriber. Must be called from the event loop."""
        self._running = True
        for sub in self._subscriptions:
            self._ensure_worker(sub)
        logger.info(f"Event bus started with {len(self._subscriptions)} subscribers")

    async def stop(self):
        """Cancel all workers. Undelivered events are dropped."""
        self._running = False
        tasks = [sub.task for sub in self._subscriptions if sub.task]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for sub in self._subscriptions:
            sub.task = None
        logger.info("Event bus stopped")

    def subscribe(self, handler: EventHandler, event_types: Optional[List[EventType]] = None):
        """
        Subscribe to events.

        Args:
            handler: Callable receiving Event objects
            event_types: Types to receive (None = every event)
        """
        sub = _Subscription(handler, set(event_types) if event_types else None)
        self._subscriptions.append(sub)
        if self._running:
            self._ensure_worker(sub)
        logger.debug(f"Subscribed {sub.name} to {event_types or 'all events'}")

    def unsubscribe(self, handler: EventHandler):
        keep = []
        for sub in self._subscriptions:
            if sub.handler == handler:
                if sub.task:
                    sub.task.cancel()
            else:
                keep.append(sub)
        self._subscriptions = keep

    def publish(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Event:
        """
        Enqueue an event for every interested subscriber. Never blocks.
        """
        event = Event(type=event_type, payload=payload or {})
        self.stats["published"] += 1
        for sub in self._subscriptions:
            if sub.wants(event):
                sub.queue.put_nowait(event)
        return event

    async def join(self):
        """Wait until every queued event has been handled."""
        for sub in list(self._subscriptions):
            if sub.task is not None:
                await sub.queue.join()

    # =========================================================================
    # WORKERS
    # =========================================================================

    def _ensure_worker(self, sub: _Subscription):
        if sub.task is None or sub.task.done():
            sub.task = asyncio.create_task(self._worker(sub))

    async def _worker(self, sub: _Subscription):
        while True:
            event = await sub.queue.get()
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.stats["delivered"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"Error in event handler {sub.name} for {event.type.value}: {e}", exc_info=True)
            finally:
                sub.queue.task_done()
