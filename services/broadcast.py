"""Realtime fan-out of readings and status to connected clients.

Each client gets an outbound queue drained by its own writer task, so a
broadcast only enqueues and never waits on a slow socket. Frames are
``{"event": <name>, "data": <payload>}``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple
from uuid import uuid4

from app.schemas import SensorDataRecord

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Connected to IoT Dashboard WebSocket"


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...


def device_room(device_id: str) -> str:
    return f"device-{device_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class ConnectedClient:
    client_id: str
    transport: Transport
    rooms: Set[str] = field(default_factory=set)
    outbox: "asyncio.Queue[Tuple[str, Any]]" = field(default_factory=asyncio.Queue)
    writer: Optional["asyncio.Task[None]"] = None


class BroadcastHub:
    """Registry of connected clients and their room memberships."""

    def __init__(self) -> None:
        self._clients: Dict[str, ConnectedClient] = {}
        self._lock = Lock()

    async def connect(self, transport: Transport) -> ConnectedClient:
        client = ConnectedClient(client_id=uuid4().hex, transport=transport)
        client.writer = asyncio.create_task(self._pump(client))
        with self._lock:
            self._clients[client.client_id] = client
            total = len(self._clients)
        logger.info(
            "Client connected (%d total)", total, extra={"client_id": client.client_id}
        )
        self._enqueue(
            client,
            "connected",
            {"message": WELCOME_MESSAGE, "clientId": client.client_id, "timestamp": _now()},
        )
        return client

    async def disconnect(self, client_id: str) -> None:
        client = self._remove(client_id)
        if client is None or client.writer is None:
            return
        client.writer.cancel()
        try:
            await client.writer
        except asyncio.CancelledError:
            pass
        self._discard_pending(client)

    def join_room(self, client_id: str, room: str) -> None:
        client = self._require(client_id)
        with self._lock:
            client.rooms.add(room)
        logger.info("Client joined room", extra={"client_id": client_id, "room": room})
        self._enqueue(client, "room-joined", {"room": room, "timestamp": _now()})

    def leave_room(self, client_id: str, room: str) -> None:
        client = self._require(client_id)
        with self._lock:
            client.rooms.discard(room)
        logger.info("Client left room", extra={"client_id": client_id, "room": room})
        self._enqueue(client, "room-left", {"room": room, "timestamp": _now()})

    def subscribe_device(self, client_id: str, device_id: str) -> None:
        client = self._require(client_id)
        with self._lock:
            client.rooms.add(device_room(device_id))
        logger.info("Client subscribed to device", extra={"client_id": client_id, "device_id": device_id})
        self._enqueue(client, "device-subscribed", {"deviceId": device_id, "timestamp": _now()})

    def unsubscribe_device(self, client_id: str, device_id: str) -> None:
        client = self._require(client_id)
        with self._lock:
            client.rooms.discard(device_room(device_id))
        logger.info(
            "Client unsubscribed from device", extra={"client_id": client_id, "device_id": device_id}
        )
        self._enqueue(client, "device-unsubscribed", {"deviceId": device_id, "timestamp": _now()})

    def dispatch(self, client_id: str, message: Any) -> None:
        """Route one client frame to the matching membership operation."""
        handlers = {
            "join-room": self.join_room,
            "leave-room": self.leave_room,
            "subscribe-device": self.subscribe_device,
            "unsubscribe-device": self.unsubscribe_device,
        }
        event = message.get("event") if isinstance(message, dict) else None
        handler = handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            self.send_error(client_id, f"Unsupported event {event!r}.")
            return
        target = message.get("data")
        if not isinstance(target, str) or not target.strip():
            self.send_error(client_id, f"Event {event!r} requires a non-empty string.")
            return
        handler(client_id, target.strip())

    def send_error(self, client_id: str, message: str) -> None:
        logger.warning("Rejected client message", extra={"client_id": client_id, "reason": message})
        self.send_to_client(client_id, "error", {"message": message, "timestamp": _now()})

    def send_to_client(self, client_id: str, event: str, data: Any) -> bool:
        with self._lock:
            client = self._clients.get(client_id)
        if client is None:
            return False
        self._enqueue(client, event, data)
        return True

    def broadcast_reading(self, record: SensorDataRecord) -> None:
        payload = record.model_dump(mode="json", by_alias=True)
        timestamp = _now()
        message = {"type": "sensor_data", "payload": payload, "timestamp": timestamp}
        room = device_room(record.device_id)

        everyone = self._snapshot()
        for client in everyone:
            self._enqueue(client, "sensor-data-update", message)
        for client in self._snapshot(room):
            self._enqueue(client, "device-data-update", message)
        if record.is_alert:
            alert = {
                "type": "alert",
                "payload": {
                    "deviceId": record.device_id,
                    "message": record.alert_message,
                    "severity": "warning",
                },
                "timestamp": timestamp,
            }
            for client in everyone:
                self._enqueue(client, "alert", alert)
        logger.debug(
            "Broadcast sensor data to %d clients",
            len(everyone),
            extra={"device_id": record.device_id, "record_id": record.id},
        )

    def broadcast_status(self, status: Dict[str, Any]) -> None:
        message = {"type": "status", "payload": status, "timestamp": _now()}
        for client in self._snapshot():
            self._enqueue(client, "system-status", message)
        logger.debug("Broadcast system status", extra={"event": "system-status"})

    def connected_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def client_ids(self) -> List[str]:
        with self._lock:
            return list(self._clients)

    def rooms_of(self, client_id: str) -> Set[str]:
        with self._lock:
            client = self._clients.get(client_id)
            return set(client.rooms) if client else set()

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to its transport."""
        await asyncio.gather(*(client.outbox.join() for client in self._snapshot()))

    async def close(self) -> None:
        for client_id in self.client_ids():
            await self.disconnect(client_id)

    def _snapshot(self, room: Optional[str] = None) -> List[ConnectedClient]:
        with self._lock:
            if room is None:
                return list(self._clients.values())
            return [client for client in self._clients.values() if room in client.rooms]

    def _require(self, client_id: str) -> ConnectedClient:
        with self._lock:
            client = self._clients.get(client_id)
        if client is None:
            raise KeyError(f"Client {client_id!r} is not connected.")
        return client

    def _remove(self, client_id: str) -> Optional[ConnectedClient]:
        with self._lock:
            client = self._clients.pop(client_id, None)
            total = len(self._clients)
        if client is not None:
            client.rooms.clear()
            logger.info("Client disconnected (%d total)", total, extra={"client_id": client_id})
        return client

    @staticmethod
    def _enqueue(client: ConnectedClient, event: str, data: Any) -> None:
        client.outbox.put_nowait((event, data))

    async def _pump(self, client: ConnectedClient) -> None:
        while True:
            event, data = await client.outbox.get()
            try:
                await client.transport.send_json({"event": event, "data": data})
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - transports raise assorted errors
                logger.warning(
                    "Dropping client after failed send: %s",
                    exc,
                    extra={"client_id": client.client_id, "event": event},
                )
                self._remove(client.client_id)
                self._discard_pending(client)
                return
            finally:
                client.outbox.task_done()

    @staticmethod
    def _discard_pending(client: ConnectedClient) -> None:
        # Frames left behind by a dropped client still count toward outbox.join().
        while True:
            try:
                client.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            client.outbox.task_done()


@lru_cache
def build_default_hub() -> BroadcastHub:
    return BroadcastHub()
