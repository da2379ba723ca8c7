"""Aggregation logic for sensor readings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from app.schemas import SensorDataRecord, SensorStats


@dataclass
class _Extremes:
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def add(self, value: float) -> None:
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value


class StatsAggregator:
    """Pure aggregation component that can be unit tested in isolation."""

    def aggregate(self, readings: Iterable[SensorDataRecord]) -> SensorStats:
        count = 0
        alerts = 0
        temperature_total = 0.0
        humidity_total = 0.0
        power_total = 0.0
        temperature = _Extremes()
        humidity = _Extremes()

        for reading in readings:
            count += 1
            if reading.is_alert:
                alerts += 1
            temperature_total += reading.temperature
            humidity_total += reading.humidity
            power_total += reading.power_usage
            temperature.add(reading.temperature)
            humidity.add(reading.humidity)

        if not count:
            return SensorStats()

        return SensorStats(
            avg_temperature=temperature_total / count,
            avg_humidity=humidity_total / count,
            avg_power_usage=power_total / count,
            max_temperature=temperature.maximum,
            min_temperature=temperature.minimum,
            max_humidity=humidity.maximum,
            min_humidity=humidity.minimum,
            total_alerts=alerts,
            count=count,
        )
