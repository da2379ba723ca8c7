"""Random telemetry used for bulk generation and the device simulator."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from models.records import SensorMetrics


def random_metrics(rng: random.Random) -> SensorMetrics:
    """Values spread wide enough that every alert rule fires now and then."""
    return SensorMetrics(
        temperature=round(rng.uniform(-10, 95), 1),
        humidity=round(rng.uniform(15, 95), 1),
        power_usage=round(rng.uniform(50, 1200), 1),
    )


def random_timestamp(rng: random.Random, now: Optional[datetime] = None, days: int = 30) -> datetime:
    end = now or datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    return start + (end - start) * rng.random()


def random_device_id(rng: random.Random, prefix: str = "device_") -> str:
    return f"{prefix}{rng.randint(1, 1000)}"


@dataclass(frozen=True)
class SimulatedDevice:
    """A device profile for the MQTT simulator: readings jitter around a baseline."""

    device_id: str
    location: str
    base_temperature: float
    base_humidity: float
    base_power_usage: float
    temperature_variation: float
    humidity_variation: float
    power_variation: float

    def sample(self, rng: random.Random) -> SensorMetrics:
        def jitter(base: float, variation: float) -> float:
            return round(rng.uniform(base - variation, base + variation), 2)

        return SensorMetrics(
            temperature=jitter(self.base_temperature, self.temperature_variation),
            humidity=jitter(self.base_humidity, self.humidity_variation),
            power_usage=jitter(self.base_power_usage, self.power_variation),
        )


DEFAULT_DEVICES = (
    SimulatedDevice("sensor-001", "Server Room A", 22, 45, 500, 5, 10, 100),
    SimulatedDevice("sensor-002", "Data Center B", 18, 40, 800, 3, 8, 150),
    SimulatedDevice("sensor-003", "Office Floor 1", 24, 50, 200, 4, 15, 50),
    SimulatedDevice("sensor-004", "Warehouse C", 15, 35, 300, 8, 20, 80),
    SimulatedDevice("sensor-005", "Lab Room D", 20, 55, 600, 6, 12, 120),
)
