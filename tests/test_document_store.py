"""Unit tests for the document collections backing every service."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.schemas import SensorDataRecord
from datastore.document_store import DocumentCollection, StoreUnavailableError, open_store

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(device_id: str = "sensor-001", temperature: float = 22.0, minutes: int = 0, **extra) -> SensorDataRecord:
    return SensorDataRecord(
        device_id=device_id,
        temperature=temperature,
        humidity=50.0,
        power_usage=300.0,
        timestamp=BASE + timedelta(minutes=minutes),
        **extra,
    )


def _collection(**kwargs) -> DocumentCollection[SensorDataRecord]:
    return DocumentCollection("sensor_data", SensorDataRecord, **kwargs)


def test_create_and_find_by_id_returns_deep_copy() -> None:
    collection = _collection()
    original = _record()

    collection.create(original)
    fetched = collection.find_by_id(original.id)

    assert fetched == original
    assert fetched is not original

    fetched.temperature = 99.0
    assert collection.find_by_id(original.id).temperature == 22.0


def test_find_by_id_returns_none_when_missing() -> None:
    assert _collection().find_by_id("missing") is None


def test_duplicate_id_is_rejected() -> None:
    collection = _collection()
    record = _record()
    collection.create(record)

    with pytest.raises(ValueError):
        collection.create(record)


def test_create_many_rejects_batch_with_duplicates_atomically() -> None:
    collection = _collection()
    first = _record()

    with pytest.raises(ValueError):
        collection.create_many([first, first.model_copy()])

    assert collection.count_documents() == 0


def test_find_filters_with_operators() -> None:
    collection = _collection()
    collection.create_many(
        [
            _record("a", temperature=10, minutes=0),
            _record("a", temperature=50, minutes=10),
            _record("b", temperature=90, minutes=20, is_alert=True, alert_message="High temperature"),
        ]
    )

    assert len(collection.find({"device_id": "a"})) == 2
    assert len(collection.find({"temperature": {"$gte": 50}})) == 2
    assert len(collection.find({"timestamp": {"$gt": BASE + timedelta(minutes=5)}, "device_id": "a"})) == 1
    assert len(collection.find({"$or": [{"device_id": "b"}, {"temperature": 10}]})) == 2
    assert collection.count_documents({"is_alert": True}) == 1


def test_persists_to_disk_and_reloads(tmp_path) -> None:
    path = tmp_path / "sensor_data.json"
    collection = _collection(persistence_path=path)
    record = _record()

    collection.create(record)

    payload = json.loads(path.read_text())
    assert payload[record.id]["device_id"] == "sensor-001"

    reloaded = _collection(persistence_path=path)
    assert reloaded.find_by_id(record.id) == record


def test_unreadable_file_starts_empty(tmp_path, caplog) -> None:
    path = tmp_path / "sensor_data.json"
    path.write_text("{not json")

    collection = _collection(persistence_path=path)

    assert collection.count_documents() == 0
    assert any("Ignoring unreadable collection file" in r.getMessage() for r in caplog.records)


def test_failed_write_rolls_back_and_raises(tmp_path, monkeypatch) -> None:
    collection = _collection(persistence_path=tmp_path / "sensor_data.json")

    def fail() -> None:
        raise OSError("disk full")

    monkeypatch.setattr(collection, "_persist", fail)

    with pytest.raises(StoreUnavailableError):
        collection.create(_record())
    assert collection.count_documents() == 0


def test_find_one_and_update_refreshes_updated_at() -> None:
    collection = _collection()
    record = collection.create(_record())

    updated = collection.find_one_and_update({"id": record.id}, {"location": "Lab"})

    assert updated.location == "Lab"
    assert updated.updated_at >= record.updated_at
    assert collection.find_one_and_update({"id": "missing"}, {"location": "x"}) is None


def test_soft_delete_marks_document_once() -> None:
    collection = _collection()
    record = collection.create(_record())

    assert collection.soft_delete(record.id, actor="admin-1") is True
    assert collection.soft_delete(record.id, actor="admin-1") is False

    stored = collection.find_by_id(record.id)
    assert stored.is_deleted is True
    assert stored.deleted_by == "admin-1"
    assert stored.deleted_at is not None


def test_find_by_id_and_delete_removes_document() -> None:
    collection = _collection()
    record = collection.create(_record())

    assert collection.find_by_id_and_delete(record.id).id == record.id
    assert collection.find_by_id(record.id) is None
    assert collection.find_by_id_and_delete(record.id) is None


def test_distinct_returns_sorted_values() -> None:
    collection = _collection()
    collection.create_many([_record("b"), _record("a"), _record("b")])

    assert collection.distinct("device_id") == ["a", "b"]


def test_aggregate_groups_documents() -> None:
    collection = _collection()
    collection.create_many(
        [
            _record("a", temperature=10),
            _record("a", temperature=30),
            _record("b", temperature=20),
        ]
    )

    rows = collection.aggregate(
        [
            {"$group": {"_id": "$device_id", "avg": {"$avg": "$temperature"}, "n": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
    )

    assert rows == [{"_id": "a", "avg": 20.0, "n": 2}, {"_id": "b", "avg": 20.0, "n": 1}]


def test_open_store_uses_one_file_per_collection(tmp_path) -> None:
    store = open_store(tmp_path)

    store.sensor_data.create(_record())

    assert (tmp_path / "sensor_data.json").exists()
    assert store.users.count_documents() == 0
    assert store.admins.persistence_path == tmp_path / "admins.json"
