"""
MQTT Protocol Adapter
Bridges MQTT devices to the registry: state and availability topics flow in,
commands flow out as JSON patches on the device's ``/set`` topic.

Topics (relative to base_topic):
    {address}               device state (JSON object, or a bare ON/OFF string)
    {address}/availability  "online" / "offline"
    {address}/set           outgoing command patch
    bridge/state            hub LWT, retained
"""
import json
import asyncio
import logging
from typing import Optional, Dict, Any
from contextlib import suppress

from error_handler import ProtocolError, with_retries
from handlers import get_handler

logger = logging.getLogger("mqtt")


class MQTTService:
    """
    MQTT adapter with reconnection backoff.
    Registered with the device registry for protocol "mqtt".
    """
    protocol = "mqtt"

    def __init__(
        self,
        registry,
        broker_host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        base_topic: str = "smarthub",
        qos: int = 0,
    ):
        self.registry = registry
        self.broker = broker_host
        self.port = port
        self.username = username
        self.password = password
        self.base_topic = base_topic.rstrip("/")
        self.default_qos = qos

        # Client management
        self.client = None
        self._connected = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._message_handler_task: Optional[asyncio.Task] = None
        self._shutdown = False

        # Reconnection settings
        self._reconnect_interval = 5
        self._max_reconnect_interval = 300
        self._reconnect_attempts = 0

        self._subscribed_topics: set = set()

        # Bridge LWT topic
        self.bridge_status_topic = f"{self.base_topic}/bridge/state"

        self.stats = {"received": 0, "published": 0, "unknown_device": 0, "errors": 0}

    @property
    def connected(self) -> bool:
        return self._connected and self.client is not None

    async def start(self):
        """Start MQTT service with automatic reconnection."""
        self._shutdown = False
        await self._connect()

    async def _connect(self):
        """Establish connection to MQTT broker."""
        try:
            from aiomqtt import Client, Will

            logger.info(f"Connecting to MQTT broker at {self.broker}:{self.port}...")

            self.client = Client(
                hostname=self.broker,
                port=self.port,
                username=self.username,
                password=self.password,
                keepalive=60,
                will=Will(self.bridge_status_topic, "offline", qos=1, retain=True),
            )

            await self.client.__aenter__()
            self._connected = True
            self._reconnect_attempts = 0
            self._reconnect_interval = 5

            logger.info(f"✓ Connected to MQTT Broker at {self.broker}:{self.port}")

            await self.client.publish(self.bridge_status_topic, "online", qos=1, retain=True)
            logger.info(f"📡 Published bridge status: {self.bridge_status_topic} = online")

            await self._subscribe_to_topics()
            self._message_handler_task = asyncio.create_task(self._handle_messages())

        except Exception as e:
            self._connected = False
            logger.error(f"MQTT connection failed: {e}")
            if not self._shutdown:
                self._schedule_reconnect()

    def _schedule_reconnect(self):
        """Schedule a reconnection attempt with exponential backoff."""
        if self._shutdown:
            return

        self._reconnect_attempts += 1
        # 10, 20, 40, 80, 160, 300 (max)
        self._reconnect_interval = min(self._reconnect_interval * 2, self._max_reconnect_interval)

        logger.warning(
            f"Scheduling MQTT reconnection attempt {self._reconnect_attempts} "
            f"in {self._reconnect_interval}s"
        )

        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        while not self._shutdown and not self._connected:
            await asyncio.sleep(self._reconnect_interval)
            if self._shutdown:
                break

            logger.info(f"Attempting MQTT reconnection (attempt {self._reconnect_attempts})...")
            await self._connect()

            if self._connected:
                logger.info("✓ MQTT reconnection successful")
                break

    async def _subscribe_to_topics(self):
        if not self.client or not self._connected:
            return

        try:
            for pattern in (f"{self.base_topic}/+", f"{self.base_topic}/+/availability"):
                await self.client.subscribe(pattern, qos=1)
                self._subscribed_topics.add(pattern)
            logger.info(f"✓ Subscribed to {self.base_topic} device topics")
        except Exception as e:
            logger.error(f"Failed to subscribe to topics: {e}")

    async def _handle_messages(self):
        if not self.client:
            return

        try:
            async for message in self.client.messages:
                try:
                    topic = str(message.topic)
                    payload = message.payload.decode('utf-8') if message.payload else ""
                    logger.debug(f"MQTT RX: {topic} = {payload}")
                    await self.handle_message(topic, payload)
                except Exception as e:
                    self.stats["errors"] += 1
                    logger.error(f"Error processing MQTT message: {e}")

        except asyncio.CancelledError:
            logger.debug("Message handler cancelled")
        except Exception as e:
            logger.error(f"MQTT message handler error: {e}")
            self._connected = False
            if not self._shutdown:
                self._schedule_reconnect()

    # =========================================================================
    # INBOUND
    # =========================================================================

    @staticmethod
    def parse_payload(payload: str) -> Dict[str, Any]:
        """JSON object payloads are used as-is; anything else is a bare state value."""
        payload = payload.strip()
        if payload.startswith('{'):
            try:
                data = json.loads(payload)
                if isinstance(data, dict):
                    return data
            except json.JSONDecodeError:
                pass
        return {"state": payload}

    async def handle_message(self, topic: str, payload: str):
        """Route one inbound message to the registry."""
        parts = topic.split('/')
        base_parts = self.base_topic.split('/')
        if parts[:len(base_parts)] != base_parts:
            return
        rest = parts[len(base_parts):]

        if not rest or rest[0] == "bridge" or rest[-1] == "set":
            return

        self.stats["received"] += 1
        device = self.registry.get_by_address(rest[0])
        if device is None or device.protocol != self.protocol:
            self.stats["unknown_device"] += 1
            logger.debug(f"Message for unknown MQTT device '{rest[0]}' ignored")
            return

        if len(rest) == 2 and rest[1] == "availability":
            status = payload.strip().lower()
            if status == "online":
                await self.registry.mark_online(device.id)
            elif status == "offline":
                await self.registry.mark_offline(device.id)
            else:
                logger.warning(f"[{device.id}] Unknown availability payload '{payload}'")
            return

        if len(rest) == 1:
            await self.registry.update_state(device.id, self.parse_payload(payload), actor=self.protocol)

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    @with_retries(max_retries=2, backoff_base=1.0, timeout=10.0)
    async def send_command(self, device, command: str, parameters: Dict[str, Any],
                           actor: Optional[str] = None):
        """Publish the command's state patch to ``{base}/{address}/set``."""
        if not device.address:
            raise ProtocolError(f"MQTT device {device.id} has no address")
        if not self.connected:
            raise ConnectionError("MQTT broker not connected")

        patch = get_handler(device).build_patch(command, parameters)
        topic = f"{self.base_topic}/{device.address}/set"
        await self.client.publish(topic, json.dumps(patch), qos=self.default_qos, retain=False)
        self.stats["published"] += 1
        logger.debug(f"PUB [{topic}] {patch} (by {actor or 'system'})")
        return patch

    async def stop(self):
        """Stop MQTT service gracefully."""
        logger.info("Stopping MQTT service...")
        self._shutdown = True

        if self.client and self._connected:
            try:
                await self.client.publish(self.bridge_status_topic, "offline", qos=1, retain=True)
                logger.info("📴 Published bridge status: offline")
            except Exception as e:
                logger.debug(f"Could not publish offline status: {e}")

        self._connected = False

        if self._reconnect_task:
            self._reconnect_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconnect_task

        if self._message_handler_task:
            self._message_handler_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._message_handler_task

        if self.client:
            try:
                await self.client.__aexit__(None, None, None)
            except Exception as e:
                logger.debug(f"Error during MQTT disconnect: {e}")

        self.client = None
        logger.info("MQTT service stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self._connected,
            "broker": f"{self.broker}:{self.port}",
            "base_topic": self.base_topic,
            "reconnect_attempts": self._reconnect_attempts,
            "subscribed_topics": sorted(self._subscribed_topics),
            **self.stats,
        }
