"""Tests for realtime fan-out."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.schemas import SensorDataRecord
from services.broadcast import WELCOME_MESSAGE, BroadcastHub


class FakeTransport:
    def __init__(self, fail: bool = False) -> None:
        self.frames: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(data)

    def events(self) -> List[str]:
        return [frame["event"] for frame in self.frames]


def _record(device_id: str = "sensor-001", is_alert: bool = False) -> SensorDataRecord:
    return SensorDataRecord(
        device_id=device_id,
        temperature=85.0 if is_alert else 22.0,
        humidity=50.0,
        power_usage=300.0,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        is_alert=is_alert,
        alert_message="High temperature" if is_alert else None,
    )


def test_connect_sends_welcome_frame() -> None:
    async def scenario() -> FakeTransport:
        hub = BroadcastHub()
        transport = FakeTransport()
        client = await hub.connect(transport)
        await hub.flush()
        assert hub.connected_count() == 1
        assert hub.client_ids() == [client.client_id]
        await hub.close()
        assert hub.connected_count() == 0
        return transport

    transport = asyncio.run(scenario())

    assert transport.events() == ["connected"]
    data = transport.frames[0]["data"]
    assert data["message"] == WELCOME_MESSAGE
    assert data["clientId"]


def test_reading_goes_to_everyone_and_device_room_only() -> None:
    async def scenario():
        hub = BroadcastHub()
        watcher, bystander = FakeTransport(), FakeTransport()
        watching = await hub.connect(watcher)
        await hub.connect(bystander)
        hub.subscribe_device(watching.client_id, "sensor-001")
        hub.broadcast_reading(_record("sensor-001"))
        hub.broadcast_reading(_record("sensor-999"))
        await hub.flush()
        await hub.close()
        return watcher, bystander

    watcher, bystander = asyncio.run(scenario())

    assert watcher.events() == [
        "connected",
        "device-subscribed",
        "sensor-data-update",
        "device-data-update",
        "sensor-data-update",
    ]
    assert bystander.events() == ["connected", "sensor-data-update", "sensor-data-update"]
    update = watcher.frames[3]["data"]
    assert update["type"] == "sensor_data"
    assert update["payload"]["deviceId"] == "sensor-001"
    assert update["payload"]["powerUsage"] == 300.0


def test_alert_reading_emits_alert_event() -> None:
    async def scenario():
        hub = BroadcastHub()
        transport = FakeTransport()
        await hub.connect(transport)
        hub.broadcast_reading(_record(is_alert=True))
        await hub.flush()
        await hub.close()
        return transport

    transport = asyncio.run(scenario())

    assert transport.events() == ["connected", "sensor-data-update", "alert"]
    alert = transport.frames[-1]["data"]
    assert alert["type"] == "alert"
    assert alert["payload"] == {"deviceId": "sensor-001", "message": "High temperature", "severity": "warning"}


def test_unsubscribe_stops_device_updates() -> None:
    async def scenario():
        hub = BroadcastHub()
        transport = FakeTransport()
        client = await hub.connect(transport)
        hub.subscribe_device(client.client_id, "sensor-001")
        hub.unsubscribe_device(client.client_id, "sensor-001")
        assert hub.rooms_of(client.client_id) == set()
        hub.broadcast_reading(_record())
        await hub.flush()
        await hub.close()
        return transport

    transport = asyncio.run(scenario())

    assert "device-data-update" not in transport.events()
    assert transport.events()[-1] == "sensor-data-update"


def test_rooms_are_idempotent_and_acknowledged() -> None:
    async def scenario():
        hub = BroadcastHub()
        transport = FakeTransport()
        client = await hub.connect(transport)
        hub.join_room(client.client_id, "dashboard")
        hub.join_room(client.client_id, "dashboard")
        rooms = hub.rooms_of(client.client_id)
        hub.leave_room(client.client_id, "dashboard")
        hub.leave_room(client.client_id, "dashboard")
        await hub.flush()
        await hub.close()
        return transport, rooms

    transport, rooms = asyncio.run(scenario())

    assert rooms == {"dashboard"}
    assert transport.events() == ["connected", "room-joined", "room-joined", "room-left", "room-left"]
    assert transport.frames[1]["data"]["room"] == "dashboard"


def test_dispatch_routes_client_messages_and_reports_errors() -> None:
    async def scenario():
        hub = BroadcastHub()
        transport = FakeTransport()
        client = await hub.connect(transport)
        hub.dispatch(client.client_id, {"event": "subscribe-device", "data": "sensor-004"})
        hub.dispatch(client.client_id, {"event": "explode", "data": "x"})
        hub.dispatch(client.client_id, {"event": "join-room", "data": ""})
        hub.dispatch(client.client_id, ["not", "a", "dict"])
        rooms = hub.rooms_of(client.client_id)
        await hub.flush()
        await hub.close()
        return transport, rooms

    transport, rooms = asyncio.run(scenario())

    assert rooms == {"device-sensor-004"}
    assert transport.events() == ["connected", "device-subscribed", "error", "error", "error"]


def test_status_broadcast_reaches_all_clients() -> None:
    async def scenario():
        hub = BroadcastHub()
        first, second = FakeTransport(), FakeTransport()
        await hub.connect(first)
        await hub.connect(second)
        hub.broadcast_status({"mqttConnected": True})
        await hub.flush()
        await hub.close()
        return first, second

    first, second = asyncio.run(scenario())

    for transport in (first, second):
        frame = transport.frames[-1]
        assert frame["event"] == "system-status"
        assert frame["data"]["type"] == "status"
        assert frame["data"]["payload"] == {"mqttConnected": True}


def test_failed_send_removes_only_that_client() -> None:
    async def scenario():
        hub = BroadcastHub()
        healthy = FakeTransport()
        await hub.connect(healthy)
        await hub.connect(FakeTransport(fail=True))
        await hub.flush()
        remaining = hub.connected_count()
        hub.broadcast_reading(_record())
        await hub.flush()
        await hub.close()
        return healthy, remaining

    healthy, remaining = asyncio.run(scenario())

    assert remaining == 1
    assert healthy.events() == ["connected", "sensor-data-update"]


def test_send_to_unknown_client_is_a_no_op() -> None:
    hub = BroadcastHub()

    assert hub.send_to_client("missing", "error", {}) is False


class SlowFailingTransport:
    async def send_json(self, data: Any) -> None:
        await asyncio.sleep(0.05)
        raise ConnectionError("socket reset")


def test_flush_returns_when_a_client_fails_with_frames_queued() -> None:
    async def scenario() -> int:
        hub = BroadcastHub()
        await hub.connect(SlowFailingTransport())
        hub.broadcast_status({"mqttConnected": True})
        hub.broadcast_status({"mqttConnected": False})
        await asyncio.wait_for(hub.flush(), 1.0)
        count = hub.connected_count()
        await hub.close()
        return count

    assert asyncio.run(scenario()) == 0


def test_disconnect_releases_queued_frames() -> None:
    async def scenario() -> None:
        hub = BroadcastHub()
        client = await hub.connect(SlowFailingTransport())
        hub.broadcast_status({"mqttConnected": True})
        outbox = client.outbox
        await hub.disconnect(client.client_id)
        await asyncio.wait_for(outbox.join(), 1.0)

    asyncio.run(scenario())
