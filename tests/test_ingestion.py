"""Tests for the device message ingestion pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import List

import pytest

from app.schemas import SensorDataRecord
from datastore.document_store import DocumentCollection, StoreUnavailableError
from services.ingestion import BadPayloadError, IngestionService, IngestStoreError, normalise_metrics


class RecordingHub:
    def __init__(self) -> None:
        self.readings: List[SensorDataRecord] = []

    def broadcast_reading(self, record: SensorDataRecord) -> None:
        self.readings.append(record)


@pytest.fixture
def collection() -> DocumentCollection[SensorDataRecord]:
    return DocumentCollection("sensor_data", SensorDataRecord)


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def service(collection, hub) -> IngestionService:
    return IngestionService(collection=collection, hub=hub, write_timeout=1.0)


def test_full_data_message_is_stored_classified_and_broadcast(service, collection, hub) -> None:
    payload = json.dumps({"temperature": 85, "humidity": 50, "powerUsage": 300, "location": "Lab"}).encode()

    record = asyncio.run(service.ingest("sensor-001", payload))

    assert record.device_id == "sensor-001"
    assert record.is_alert is True
    assert record.alert_message == "High temperature"
    assert record.location == "Lab"
    assert collection.find_by_id(record.id) == record
    assert [item.id for item in hub.readings] == [record.id]


def test_normal_reading_is_broadcast_without_alert(service, hub) -> None:
    record = asyncio.run(service.ingest("sensor-002", {"temperature": 22, "humidity": 45, "powerUsage": 500}))

    assert record.is_alert is False
    assert record.alert_message is None
    assert len(hub.readings) == 1


def test_temperature_topic_zeroes_other_metrics(service) -> None:
    record = asyncio.run(service.ingest("sensor-003", '{"value": 25}', metric="temperature"))

    assert record.temperature == 25
    assert record.humidity == 0
    assert record.power_usage == 0
    # Zero defaults trip the low humidity rule.
    assert record.alert_message == "Low humidity"


def test_falsy_values_fall_through_to_next_candidate() -> None:
    metrics = normalise_metrics({"humidity": 0, "value": 33}, metric="humidity")

    assert metrics.humidity == 33


def test_power_topic_reads_power_usage_field() -> None:
    metrics = normalise_metrics({"powerUsage": 1200}, metric="power")

    assert metrics.power_usage == 1200
    assert metrics.temperature == 0


def test_numeric_strings_are_accepted() -> None:
    metrics = normalise_metrics({"temperature": "21.5", "humidity": "40", "powerUsage": 3})

    assert metrics.temperature == 21.5
    assert metrics.humidity == 40.0


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2, 3]",
        b"\xff\xfe",
        '{"temperature": "hot"}',
        '{"temperature": true}',
        '{"temperature": NaN}',
        '{"humidity": Infinity}',
        '{"temperature": 20, "location": 5}',
        '{"temperature": {"value": 1}}',
        pytest.param(b"[" * 200000, id="deeply-nested"),
    ],
)
def test_bad_payloads_are_rejected_without_side_effects(service, collection, hub, payload, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="services.ingestion"):
        with pytest.raises(BadPayloadError):
            asyncio.run(service.ingest("sensor-001", payload))

    assert collection.count_documents() == 0
    assert hub.readings == []
    assert any(getattr(record, "reason", None) for record in caplog.records)


def test_empty_device_id_is_rejected(service) -> None:
    with pytest.raises(BadPayloadError):
        asyncio.run(service.ingest("  ", {"temperature": 20}))


def test_store_failure_skips_broadcast(service, collection, hub, monkeypatch) -> None:
    def fail(_record):
        raise StoreUnavailableError("disk full")

    monkeypatch.setattr(collection, "create", fail)

    with pytest.raises(IngestStoreError):
        asyncio.run(service.ingest("sensor-001", {"temperature": 20, "humidity": 40, "powerUsage": 1}))

    assert hub.readings == []
    assert service._device_locks == {}


def test_stalled_write_times_out(collection, hub, monkeypatch) -> None:
    original_create = collection.create

    def slow_create(record):
        time.sleep(0.3)
        return original_create(record)

    monkeypatch.setattr(collection, "create", slow_create)
    service = IngestionService(collection=collection, hub=hub, write_timeout=0.05)

    with pytest.raises(IngestStoreError):
        asyncio.run(service.ingest("sensor-001", {"temperature": 20, "humidity": 40, "powerUsage": 1}))

    assert hub.readings == []


def test_messages_for_one_device_keep_arrival_order(collection, hub, monkeypatch) -> None:
    original_create = collection.create
    delays = iter([0.05, 0.0, 0.03, 0.0, 0.01])

    def jittery_create(record):
        time.sleep(next(delays))
        return original_create(record)

    monkeypatch.setattr(collection, "create", jittery_create)
    service = IngestionService(collection=collection, hub=hub, write_timeout=1.0)

    async def run() -> None:
        await asyncio.gather(
            *(
                service.ingest("sensor-001", {"temperature": 20 + index, "humidity": 50, "powerUsage": 1})
                for index in range(5)
            )
        )

    asyncio.run(run())

    assert [record.temperature for record in hub.readings] == [20, 21, 22, 23, 24]
    assert service._device_locks == {}


def test_device_locks_do_not_accumulate(service, collection) -> None:
    async def run() -> None:
        for index in range(20):
            await service.ingest(f"device-{index}", {"temperature": 20, "humidity": 40, "powerUsage": 1})

    asyncio.run(run())

    assert collection.count_documents() == 20
    assert service._device_locks == {}
