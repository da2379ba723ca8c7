"""Adapter between the MQTT broker and the ingestion pipeline.

paho runs its network loop on a background thread; every callback hands its
work to the asyncio loop the bridge was started on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from concurrent.futures import Future
from datetime import datetime, timezone
from functools import lru_cache, partial
from typing import Any, Dict, Optional, Union

import paho.mqtt.client as mqtt

from services.broadcast import BroadcastHub, build_default_hub
from services.ingestion import IngestError, IngestionService, build_default_ingestion
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

SUBSCRIPTIONS = (
    "iot/sensor/+/data",
    "iot/sensor/+/temperature",
    "iot/sensor/+/humidity",
    "iot/sensor/+/power",
    "iot/device/+/status",
)

SENSOR_METRICS = ("data", "temperature", "humidity", "power")


@dataclass(frozen=True)
class TopicRoute:
    kind: str  # "sensor" or "status"
    device_id: str
    metric: Optional[str] = None


def parse_topic(topic: str) -> Optional[TopicRoute]:
    parts = topic.split("/")
    if len(parts) != 4 or parts[0] != "iot" or not parts[2]:
        return None
    _, family, device_id, leaf = parts
    if family == "sensor" and leaf in SENSOR_METRICS:
        return TopicRoute(kind="sensor", device_id=device_id, metric=leaf)
    if family == "device" and leaf == "status":
        return TopicRoute(kind="status", device_id=device_id)
    return None


class MQTTBridge:
    def __init__(
        self,
        ingestion: IngestionService,
        hub: BroadcastHub,
        settings: Settings,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.ingestion = ingestion
        self.hub = hub
        self.settings = settings
        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=settings.mqtt_client_id
        )
        if settings.mqtt_username and settings.mqtt_password:
            self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.loop = loop or asyncio.get_running_loop()
        logger.info(
            "Connecting to MQTT broker %s:%d",
            self.settings.mqtt_host,
            self.settings.mqtt_port,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=5)
        self.client.connect_async(self.settings.mqtt_host, self.settings.mqtt_port, keepalive=60)
        self.client.loop_start()

    def stop(self) -> None:
        if self._connected:
            self.publish(self.settings.mqtt_status_topic, {"status": "offline"})
        self.client.disconnect()
        self.client.loop_stop()
        self._connected = False
        logger.info("Disconnected from MQTT broker")

    def is_connected(self) -> bool:
        return self._connected

    def connection_status(self) -> Dict[str, Any]:
        return {
            "connected": self._connected,
            "clientId": self.settings.mqtt_client_id,
            "broker": f"{self.settings.mqtt_host}:{self.settings.mqtt_port}",
        }

    def publish(self, topic: str, message: Any) -> bool:
        if not self._connected:
            logger.warning("MQTT client not connected; dropping publish", extra={"topic": topic})
            return False
        info = self.client.publish(topic, json.dumps(message, default=str))
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Failed to publish message", extra={"topic": topic, "status": info.rc})
            return False
        logger.debug("Published message", extra={"topic": topic})
        return True

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code != 0:
            logger.error("MQTT connection refused", extra={"reason": str(reason_code)})
            return
        self._connected = True
        logger.info("Connected to MQTT broker")
        for topic in SUBSCRIPTIONS:
            client.subscribe(topic)
            logger.info("Subscribed", extra={"topic": topic})
        self.publish(self.settings.mqtt_status_topic, {"status": "online"})
        self._push_status({"mqttConnected": True, "timestamp": _now()})

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected = False
        if reason_code != 0:
            logger.warning("Unexpected MQTT disconnect", extra={"reason": str(reason_code)})
        self._push_status({"mqttConnected": False, "timestamp": _now()})

    def _on_message(self, client, userdata, msg) -> None:
        if self.loop is None or not self.loop.is_running():
            logger.warning("Event loop not running; dropping message", extra={"topic": msg.topic})
            return
        future = asyncio.run_coroutine_threadsafe(self.handle_message(msg.topic, msg.payload), self.loop)
        future.add_done_callback(partial(_log_failure, msg.topic))

    def _push_status(self, status: Dict[str, Any]) -> None:
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.hub.broadcast_status, status)

    async def handle_message(self, topic: str, payload: Union[bytes, str]) -> None:
        route = parse_topic(topic)
        if route is None:
            logger.warning("Ignoring message on unknown topic", extra={"topic": topic})
            return

        if route.kind == "status":
            self._handle_status(route.device_id, topic, payload)
            return

        try:
            await self.ingestion.ingest(route.device_id, payload, metric=route.metric or "data")
        except IngestError as exc:
            # At-most-once: the message is dropped, redelivery is the broker's concern.
            logger.warning(
                "Dropped sensor message: %s",
                exc,
                extra={"topic": topic, "device_id": route.device_id},
            )

    def _handle_status(self, device_id: str, topic: str, payload: Union[bytes, str]) -> None:
        try:
            status = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning(
                "Dropped malformed status message",
                extra={"topic": topic, "device_id": device_id, "reason": str(exc)},
            )
            return
        if not isinstance(status, dict):
            logger.warning(
                "Dropped malformed status message",
                extra={"topic": topic, "device_id": device_id, "reason": "not an object"},
            )
            return

        message = {
            "deviceId": device_id,
            "status": status.get("status") or "unknown",
            "timestamp": _now(),
            **status,
        }
        logger.info(
            "Device status %s",
            message["status"],
            extra={"device_id": device_id, "status": message["status"]},
        )
        self.hub.broadcast_status(message)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_failure(topic: str, future: Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            "Unhandled error while processing message",
            exc_info=exc,
            extra={"topic": topic, "reason": str(exc)},
        )


@lru_cache
def build_default_bridge() -> MQTTBridge:
    return MQTTBridge(
        ingestion=build_default_ingestion(),
        hub=build_default_hub(),
        settings=get_settings(),
    )
