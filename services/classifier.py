"""Static threshold rules for sensor readings."""

from __future__ import annotations

from typing import Callable, Tuple

from models.records import AlertClassification, SensorMetrics

HIGH_TEMPERATURE = 80.0
LOW_TEMPERATURE = 10.0
HIGH_HUMIDITY = 90.0
LOW_HUMIDITY = 20.0
HIGH_POWER_USAGE = 1000.0

# Evaluation order is also the order of the joined alert message.
_RULES: Tuple[Tuple[Callable[[SensorMetrics], bool], str], ...] = (
    (lambda m: m.temperature > HIGH_TEMPERATURE, "High temperature"),
    (lambda m: m.temperature < LOW_TEMPERATURE, "Low temperature"),
    (lambda m: m.humidity > HIGH_HUMIDITY, "High humidity"),
    (lambda m: m.humidity < LOW_HUMIDITY, "Low humidity"),
    (lambda m: m.power_usage > HIGH_POWER_USAGE, "High power usage"),
)


def classify(metrics: SensorMetrics) -> AlertClassification:
    """Return the alert status and message for ``metrics``.

    Every rule is checked; the message lists all violations joined by ", ".
    NaN never satisfies a comparison, so NaN metrics fire no rule.
    """
    violations = [label for predicate, label in _RULES if predicate(metrics)]
    if not violations:
        return AlertClassification(is_alert=False, message=None)
    return AlertClassification(is_alert=True, message=", ".join(violations))
