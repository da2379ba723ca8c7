"""Tests for the MQTT adapter, driven through a fake paho client."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import paho.mqtt.client as mqtt
import pytest

from app.schemas import SensorDataRecord
from datastore.document_store import DocumentCollection
from services.ingestion import IngestionService
from services.mqtt_bridge import SUBSCRIPTIONS, MQTTBridge, TopicRoute, parse_topic
from settings import get_settings


class FakeClient:
    def __init__(self) -> None:
        self.subscriptions: List[str] = []
        self.published: List[Tuple[str, str]] = []
        self.credentials = None
        self.started = False
        self.stopped = False
        self.disconnected = False
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def username_pw_set(self, username: str, password: str) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: int, max_delay: int) -> None:
        pass

    def connect_async(self, host: str, port: int, keepalive: int) -> None:
        self.target = (host, port)

    def loop_start(self) -> None:
        self.started = True

    def loop_stop(self) -> None:
        self.stopped = True

    def disconnect(self) -> None:
        self.disconnected = True

    def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def publish(self, topic: str, payload: str) -> Any:
        self.published.append((topic, payload))
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)


class RecordingHub:
    def __init__(self) -> None:
        self.readings: List[SensorDataRecord] = []
        self.statuses: List[Dict[str, Any]] = []

    def broadcast_reading(self, record: SensorDataRecord) -> None:
        self.readings.append(record)

    def broadcast_status(self, status: Dict[str, Any]) -> None:
        self.statuses.append(status)


@pytest.fixture
def settings():
    return replace(get_settings(), mqtt_username="iot", mqtt_password="secret")


@pytest.fixture
def collection() -> DocumentCollection[SensorDataRecord]:
    return DocumentCollection("sensor_data", SensorDataRecord)


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def bridge(collection, hub, settings) -> MQTTBridge:
    ingestion = IngestionService(collection=collection, hub=hub, write_timeout=1.0)
    return MQTTBridge(ingestion=ingestion, hub=hub, settings=settings, client=FakeClient())


@pytest.mark.parametrize(
    ("topic", "expected"),
    [
        ("iot/sensor/sensor-001/data", TopicRoute("sensor", "sensor-001", "data")),
        ("iot/sensor/abc/temperature", TopicRoute("sensor", "abc", "temperature")),
        ("iot/sensor/abc/humidity", TopicRoute("sensor", "abc", "humidity")),
        ("iot/sensor/abc/power", TopicRoute("sensor", "abc", "power")),
        ("iot/device/abc/status", TopicRoute("status", "abc")),
        ("iot/sensor/abc/voltage", None),
        ("iot/device/abc/data", None),
        ("iot/sensor//data", None),
        ("other/sensor/abc/data", None),
        ("iot/sensor/abc/data/extra", None),
    ],
)
def test_parse_topic(topic: str, expected) -> None:
    assert parse_topic(topic) == expected


def test_credentials_are_applied(bridge) -> None:
    assert bridge.client.credentials == ("iot", "secret")


def test_sensor_message_is_ingested(bridge, collection, hub) -> None:
    payload = json.dumps({"temperature": 95, "humidity": 50, "powerUsage": 200}).encode()

    asyncio.run(bridge.handle_message("iot/sensor/sensor-001/data", payload))

    assert collection.count_documents() == 1
    assert hub.readings[0].alert_message == "High temperature"


def test_bad_sensor_message_is_dropped(bridge, collection, hub, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="services.mqtt_bridge"):
        asyncio.run(bridge.handle_message("iot/sensor/sensor-001/data", b"{broken"))

    assert collection.count_documents() == 0
    assert hub.readings == []
    assert any("Dropped sensor message" in record.getMessage() for record in caplog.records)


def test_status_message_is_broadcast_with_defaults(bridge, hub) -> None:
    payload = json.dumps({"battery": 80, "signalStrength": 60}).encode()

    asyncio.run(bridge.handle_message("iot/device/sensor-002/status", payload))

    (status,) = hub.statuses
    assert status["deviceId"] == "sensor-002"
    assert status["status"] == "unknown"
    assert status["battery"] == 80
    assert "timestamp" in status


def test_status_message_keeps_device_fields(bridge, hub) -> None:
    payload = json.dumps({"status": "error", "location": "Lab"}).encode()

    asyncio.run(bridge.handle_message("iot/device/sensor-002/status", payload))

    assert hub.statuses[0]["status"] == "error"
    assert hub.statuses[0]["location"] == "Lab"


@pytest.mark.parametrize("payload", [b"nope", b"[1]"])
def test_malformed_status_is_dropped(bridge, hub, payload) -> None:
    asyncio.run(bridge.handle_message("iot/device/sensor-002/status", payload))

    assert hub.statuses == []


def test_unknown_topic_is_ignored(bridge, collection, hub) -> None:
    asyncio.run(bridge.handle_message("iot/sensor/x/voltage", b"{}"))

    assert collection.count_documents() == 0
    assert hub.statuses == []


def test_publish_requires_connection(bridge) -> None:
    assert bridge.publish("iot/test", {"a": 1}) is False
    assert bridge.client.published == []


def test_connect_subscribes_announces_and_broadcasts(bridge, hub, settings) -> None:
    async def scenario() -> None:
        bridge.start(asyncio.get_running_loop())
        bridge._on_connect(bridge.client, None, None, 0, None)
        await asyncio.sleep(0)
        bridge._on_disconnect(bridge.client, None, None, 0, None)
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert bridge.client.started is True
    assert bridge.client.target == (settings.mqtt_host, settings.mqtt_port)
    assert bridge.client.subscriptions == list(SUBSCRIPTIONS)
    assert bridge.client.published == [(settings.mqtt_status_topic, json.dumps({"status": "online"}))]
    assert [status["mqttConnected"] for status in hub.statuses] == [True, False]
    assert bridge.is_connected() is False


def test_refused_connection_does_not_subscribe(bridge) -> None:
    bridge._on_connect(bridge.client, None, None, 5, None)

    assert bridge.client.subscriptions == []
    assert bridge.is_connected() is False


def test_on_message_hands_off_to_the_loop(bridge, collection) -> None:
    message = SimpleNamespace(topic="iot/sensor/sensor-009/data", payload=b'{"temperature": 30, "humidity": 40}')

    async def scenario() -> None:
        bridge.start(asyncio.get_running_loop())
        # Run the callback on another thread, as paho does.
        await asyncio.to_thread(bridge._on_message, bridge.client, None, message)
        for _ in range(50):
            if collection.count_documents():
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert collection.distinct("device_id") == ["sensor-009"]


def test_stop_announces_offline_when_connected(bridge, settings) -> None:
    bridge._on_connect(bridge.client, None, None, 0, None)

    bridge.stop()

    assert bridge.client.published[-1] == (settings.mqtt_status_topic, json.dumps({"status": "offline"}))
    assert bridge.client.disconnected is True
    assert bridge.client.stopped is True
    assert bridge.connection_status()["connected"] is False


def test_deeply_nested_sensor_message_is_dropped_with_log(bridge, collection, hub, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="services.mqtt_bridge"):
        asyncio.run(bridge.handle_message("iot/sensor/sensor-001/data", b"[" * 200000))

    assert collection.count_documents() == 0
    assert hub.readings == []
    assert any("Dropped sensor message" in record.getMessage() for record in caplog.records)


def test_unexpected_handler_error_is_logged(bridge, monkeypatch, caplog) -> None:
    async def explode(topic: str, payload: bytes) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(bridge, "handle_message", explode)
    message = SimpleNamespace(topic="iot/sensor/sensor-009/data", payload=b"{}")

    async def scenario() -> None:
        bridge.start(asyncio.get_running_loop())
        await asyncio.to_thread(bridge._on_message, bridge.client, None, message)
        for _ in range(50):
            if caplog.records:
                break
            await asyncio.sleep(0.01)

    with caplog.at_level(logging.ERROR, logger="services.mqtt_bridge"):
        asyncio.run(scenario())

    (record,) = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert record.getMessage() == "Unhandled error while processing message"
    assert record.topic == "iot/sensor/sensor-009/data"
