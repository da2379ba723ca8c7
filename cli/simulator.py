"""Publish simulated device telemetry to the MQTT broker."""

from __future__ import annotations

import json
import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from services.generator import DEFAULT_DEVICES, SimulatedDevice

Message = Tuple[str, Dict[str, Any]]
Publisher = Callable[[str, str], Any]

INDIVIDUAL_READINGS_CHANCE = 0.3
STATUS_CHANCE = 0.1
ERROR_STATUS_CHANCE = 0.05


class DeviceSimulator:
    def __init__(
        self,
        publish: Publisher,
        devices: Sequence[SimulatedDevice] = DEFAULT_DEVICES,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.publish = publish
        self.devices = list(devices)
        self.rng = rng or random.Random()

    def messages_for(self, device: SimulatedDevice, now: Optional[datetime] = None) -> List[Message]:
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        metrics = device.sample(self.rng)
        base = f"iot/sensor/{device.device_id}"
        messages: List[Message] = [
            (
                f"{base}/data",
                {
                    "temperature": metrics.temperature,
                    "humidity": metrics.humidity,
                    "powerUsage": metrics.power_usage,
                    "location": device.location,
                    "timestamp": stamp,
                },
            )
        ]
        if self.rng.random() < INDIVIDUAL_READINGS_CHANCE:
            common = {"location": device.location, "timestamp": stamp}
            messages.extend(
                [
                    (f"{base}/temperature", {"temperature": metrics.temperature, **common}),
                    (f"{base}/humidity", {"humidity": metrics.humidity, **common}),
                    (f"{base}/power", {"powerUsage": metrics.power_usage, **common}),
                ]
            )
        if self.rng.random() < STATUS_CHANCE:
            messages.append(
                (
                    f"iot/device/{device.device_id}/status",
                    {
                        "status": "error" if self.rng.random() < ERROR_STATUS_CHANCE else "online",
                        "battery": self.rng.randint(0, 100),
                        "signalStrength": self.rng.randint(0, 100),
                        "lastSeen": stamp,
                        "location": device.location,
                    },
                )
            )
        return messages

    def publish_round(self, now: Optional[datetime] = None) -> int:
        """Publish one round for every device; returns the number of messages sent."""
        sent = 0
        for device in self.devices:
            for topic, payload in self.messages_for(device, now):
                self.publish(topic, json.dumps(payload))
                sent += 1
        return sent
