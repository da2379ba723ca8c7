"""Read and write paths for stored sensor readings."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from app.schemas import (
    DeviceSummary,
    GenerateSensorDataRequest,
    SensorDataCreate,
    SensorDataRecord,
    SensorStats,
)
from datastore.document_store import DocumentCollection, build_default_store
from models.records import Page, PageRequest, SensorMetrics, SortOrder
from services.classifier import classify
from services.generator import random_device_id, random_metrics, random_timestamp
from services.pagination import paginate
from services.stats import StatsAggregator

logger = logging.getLogger(__name__)

SENSOR_SORT_FIELDS = {
    "timestamp": "timestamp",
    "createdAt": "created_at",
    "deviceId": "device_id",
    "temperature": "temperature",
    "humidity": "humidity",
    "powerUsage": "power_usage",
}

LATEST_LIMIT = 10


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_sensor_record(
    device_id: str,
    metrics: SensorMetrics,
    *,
    location: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    created_by: Optional[str] = None,
) -> SensorDataRecord:
    """Create a record whose alert fields come from the threshold classifier."""
    classification = classify(metrics)
    return SensorDataRecord(
        device_id=device_id,
        temperature=metrics.temperature,
        humidity=metrics.humidity,
        power_usage=metrics.power_usage,
        timestamp=ensure_utc(timestamp) if timestamp else datetime.now(timezone.utc),
        location=location,
        is_alert=classification.is_alert,
        alert_message=classification.message,
        created_by=created_by,
    )


@dataclass
class SensorDataQuery:
    device_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    alerts_only: bool = False
    page: PageRequest = field(
        default_factory=lambda: PageRequest(limit=50, sort_by="timestamp", sort_order=SortOrder.desc)
    )

    def to_filter(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {"is_deleted": False}
        if self.device_id:
            query["device_id"] = self.device_id
        if self.alerts_only:
            query["is_alert"] = True
        if self.start_date or self.end_date:
            window: Dict[str, datetime] = {}
            if self.start_date:
                window["$gte"] = ensure_utc(self.start_date)
            if self.end_date:
                window["$lte"] = ensure_utc(self.end_date)
            query["timestamp"] = window
        return query


class SensorDataService:
    """CRUD, listing and statistics over the sensor data collection."""

    def __init__(
        self,
        collection: DocumentCollection[SensorDataRecord],
        aggregator: StatsAggregator,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.collection = collection
        self.aggregator = aggregator
        self.rng = rng or random.Random()

    def create_reading(self, payload: SensorDataCreate, actor: Optional[str] = None) -> SensorDataRecord:
        record = build_sensor_record(
            payload.device_id,
            SensorMetrics(
                temperature=payload.temperature,
                humidity=payload.humidity,
                power_usage=payload.power_usage,
            ),
            location=payload.location,
            created_by=actor,
        )
        created = self.collection.create(record)
        logger.info(
            "Created sensor reading",
            extra={"record_id": created.id, "device_id": created.device_id},
        )
        return created

    def generate_readings(
        self, request: GenerateSensorDataRequest, actor: Optional[str] = None
    ) -> List[SensorDataRecord]:
        now = datetime.now(timezone.utc)
        records = [
            build_sensor_record(
                random_device_id(self.rng, request.device_id_prefix),
                random_metrics(self.rng),
                location=request.location,
                timestamp=random_timestamp(self.rng, now=now),
                created_by=actor,
            )
            for _ in range(request.count)
        ]
        created = self.collection.create_many(records)
        logger.info("Generated %d sensor readings", len(created))
        return created

    def list_readings(self, query: SensorDataQuery) -> Page[SensorDataRecord]:
        matches = self.collection.find(query.to_filter())
        return paginate(matches, query.page, SENSOR_SORT_FIELDS)

    def get_reading(self, record_id: str) -> SensorDataRecord:
        record = self.collection.find_by_id(record_id)
        if record is None or record.is_deleted:
            raise KeyError(f"Sensor data {record_id!r} not found.")
        return record

    def latest(self, device_id: Optional[str] = None, limit: int = LATEST_LIMIT) -> List[SensorDataRecord]:
        query: Dict[str, Any] = {"is_deleted": False}
        if device_id:
            query["device_id"] = device_id
        records = self.collection.find(query)
        records.sort(key=lambda record: (record.timestamp, record.id), reverse=True)
        return records[:limit]

    def get_stats(
        self,
        device_id: Optional[str] = None,
        hours: float = 24,
        now: Optional[datetime] = None,
    ) -> SensorStats:
        since = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
        query: Dict[str, Any] = {"is_deleted": False, "timestamp": {"$gte": since}}
        if device_id:
            query["device_id"] = device_id
        return self.aggregator.aggregate(self.collection.find(query))

    def list_devices(self) -> List[str]:
        return self.collection.distinct("device_id", {"is_deleted": False})

    def device_summaries(self) -> List[DeviceSummary]:
        rows = self.collection.aggregate(
            [
                {"$match": {"is_deleted": False}},
                {
                    "$group": {
                        "_id": "$device_id",
                        "count": {"$sum": 1},
                        "alert_count": {"$sum": {"$cond": ["$is_alert", 1, 0]}},
                        "last_seen": {"$max": "$timestamp"},
                    }
                },
                {"$sort": {"_id": 1}},
            ]
        )
        return [
            DeviceSummary(
                device_id=row["_id"],
                count=row["count"],
                alert_count=row["alert_count"],
                last_seen=row["last_seen"],
            )
            for row in rows
        ]

    def delete_reading(self, record_id: str) -> SensorDataRecord:
        deleted = self.collection.find_by_id_and_delete(record_id)
        if deleted is None:
            raise KeyError(f"Sensor data {record_id!r} not found.")
        logger.info("Deleted sensor reading", extra={"record_id": record_id})
        return deleted

    def archive_reading(self, record_id: str, actor: Optional[str] = None) -> None:
        if not self.collection.soft_delete(record_id, actor):
            raise KeyError(f"Sensor data {record_id!r} not found.")
        logger.info("Archived sensor reading", extra={"record_id": record_id})


@lru_cache
def build_default_sensor_service() -> SensorDataService:
    store = build_default_store()
    return SensorDataService(collection=store.sensor_data, aggregator=StatsAggregator())
