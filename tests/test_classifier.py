"""Unit tests for the threshold classifier."""

from __future__ import annotations

import math

import pytest

from models.records import SensorMetrics
from services.classifier import classify


def _metrics(temperature: float = 22.0, humidity: float = 50.0, power_usage: float = 500.0) -> SensorMetrics:
    return SensorMetrics(temperature=temperature, humidity=humidity, power_usage=power_usage)


def test_normal_reading_is_not_an_alert() -> None:
    result = classify(_metrics())

    assert result.is_alert is False
    assert result.message is None


@pytest.mark.parametrize(
    ("metrics", "message"),
    [
        (_metrics(temperature=80.5), "High temperature"),
        (_metrics(temperature=9.9), "Low temperature"),
        (_metrics(humidity=90.1), "High humidity"),
        (_metrics(humidity=19.9), "Low humidity"),
        (_metrics(power_usage=1000.1), "High power usage"),
    ],
)
def test_each_rule_fires_alone(metrics: SensorMetrics, message: str) -> None:
    result = classify(metrics)

    assert result.is_alert is True
    assert result.message == message


def test_thresholds_are_exclusive() -> None:
    result = classify(_metrics(temperature=80, humidity=90, power_usage=1000))

    assert result.is_alert is False
    assert classify(_metrics(temperature=10, humidity=20)).is_alert is False


def test_multiple_violations_join_in_fixed_order() -> None:
    result = classify(_metrics(temperature=85, humidity=95, power_usage=1100))

    assert result.message == "High temperature, High humidity, High power usage"


def test_zero_defaults_trigger_low_alerts() -> None:
    result = classify(_metrics(temperature=0, humidity=0, power_usage=0))

    assert result.message == "Low temperature, Low humidity"


def test_nan_fires_no_rule() -> None:
    result = classify(_metrics(temperature=math.nan))

    assert result.is_alert is False
