from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence, Union

from app.schemas import SensorDataRecord
from datastore.document_store import DocumentCollection, StoreUnavailableError, build_default_store
from models.records import SensorMetrics
from services.broadcast import BroadcastHub, build_default_hub
from services.sensor_data import build_sensor_record
from settings import get_settings

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, bytearray, str, Mapping[str, Any]]

METRIC_FIELDS = {
    "temperature": "temperature",
    "humidity": "humidity",
    "power": "powerUsage",
}


class IngestError(Exception):
    """Base class for ingestion failures."""


class BadPayloadError(IngestError):
    """Raised when a device message cannot be turned into a reading."""


class IngestStoreError(IngestError):
    """Raised when the reading could not be written within the deadline."""


def decode_payload(raw_payload: RawPayload) -> Dict[str, Any]:
    if isinstance(raw_payload, Mapping):
        return dict(raw_payload)
    if isinstance(raw_payload, (bytes, bytearray)):
        try:
            raw_payload = bytes(raw_payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BadPayloadError("Payload is not valid UTF-8.") from exc
    if not isinstance(raw_payload, str):
        raise BadPayloadError(f"Unsupported payload type {type(raw_payload).__name__}.")
    try:
        decoded = json.loads(raw_payload)
    except json.JSONDecodeError as exc:
        raise BadPayloadError(f"Payload is not valid JSON: {exc.msg}.") from exc
    except (ValueError, RecursionError) as exc:
        raise BadPayloadError("Payload is not valid JSON: nested too deeply or malformed.") from exc
    if not isinstance(decoded, dict):
        raise BadPayloadError("Payload must be a JSON object.")
    return decoded


def _first_truthy(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    # Falsy values fall through to the next key, then to 0.
    for key in keys:
        value = payload.get(key)
        if value:
            return value
    return 0


def _to_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise BadPayloadError(f"{name} must be a number, got a boolean.")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise BadPayloadError(f"{name} must be numeric, got {value!r}.") from exc
    else:
        raise BadPayloadError(f"{name} must be a number, got {type(value).__name__}.")
    if not math.isfinite(number):
        raise BadPayloadError(f"{name} must be a finite number.")
    return number


def normalise_metrics(payload: Mapping[str, Any], metric: str = "data") -> SensorMetrics:
    """Map a topic payload onto the three metrics.

    ``data`` carries all three fields. Single-metric topics read their own
    field or ``value`` and report zero for the other two.
    """
    if metric == "data":
        values = {
            "temperature": _first_truthy(payload, ("temperature",)),
            "humidity": _first_truthy(payload, ("humidity",)),
            "powerUsage": _first_truthy(payload, ("powerUsage",)),
        }
    elif metric in METRIC_FIELDS:
        field = METRIC_FIELDS[metric]
        values = {"temperature": 0, "humidity": 0, "powerUsage": 0}
        values[field] = _first_truthy(payload, (field, "value"))
    else:
        raise BadPayloadError(f"Unknown metric {metric!r}.")

    return SensorMetrics(
        temperature=_to_number("temperature", values["temperature"]),
        humidity=_to_number("humidity", values["humidity"]),
        power_usage=_to_number("powerUsage", values["powerUsage"]),
    )


class IngestionService:
    """Validate, classify, persist and broadcast one device message at a time per device."""

    def __init__(
        self,
        collection: DocumentCollection[SensorDataRecord],
        hub: BroadcastHub,
        write_timeout: float = 5.0,
    ) -> None:
        self.collection = collection
        self.hub = hub
        self.write_timeout = write_timeout
        # device id -> [lock, number of ingests holding or waiting on it]
        self._device_locks: Dict[str, List[Any]] = {}

    async def ingest(
        self,
        device_id: str,
        raw_payload: RawPayload,
        metric: str = "data",
    ) -> SensorDataRecord:
        device_id = (device_id or "").strip()
        try:
            if not device_id:
                raise BadPayloadError("Device id must not be empty.")
            payload = decode_payload(raw_payload)
            metrics = normalise_metrics(payload, metric)
            location = payload.get("location")
            if location is not None and not isinstance(location, str):
                raise BadPayloadError("location must be a string.")
        except BadPayloadError as exc:
            logger.warning(
                "Rejected sensor payload",
                extra={"device_id": device_id or None, "reason": str(exc)},
            )
            raise

        async with self._device_lock(device_id):
            record = build_sensor_record(device_id, metrics, location=location)
            started = time.perf_counter()
            saved = await self._write(record)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.info(
                "Stored sensor reading",
                extra={"device_id": device_id, "record_id": saved.id, "duration_ms": duration_ms},
            )
            if saved.is_alert:
                logger.warning(
                    "Alert detected: %s",
                    saved.alert_message,
                    extra={"device_id": device_id, "record_id": saved.id},
                )
            self.hub.broadcast_reading(saved)
            return saved

    @asynccontextmanager
    async def _device_lock(self, device_id: str) -> AsyncIterator[None]:
        entry = self._device_locks.setdefault(device_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._device_locks[device_id]

    async def _write(self, record: SensorDataRecord) -> SensorDataRecord:
        # On timeout the worker thread may still finish the write; the
        # reading is then stored but never broadcast.
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.collection.create, record),
                timeout=self.write_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "Timed out writing sensor reading",
                extra={"device_id": record.device_id, "reason": "timeout"},
            )
            raise IngestStoreError(
                f"Store write exceeded {self.write_timeout:g}s for {record.device_id!r}."
            ) from exc
        except StoreUnavailableError as exc:
            logger.error(
                "Failed to write sensor reading",
                extra={"device_id": record.device_id, "reason": str(exc)},
            )
            raise IngestStoreError(str(exc)) from exc


@lru_cache
def build_default_ingestion() -> IngestionService:
    settings = get_settings()
    store = build_default_store()
    return IngestionService(
        collection=store.sensor_data,
        hub=build_default_hub(),
        write_timeout=settings.store_write_timeout,
    )
