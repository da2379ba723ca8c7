from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_MQTT_HOST = "localhost"
DEFAULT_MQTT_PORT = 1883

_BASE_URL_ENV = "API_BASE_URL"
_TOKEN_ENV = "DASHBOARD_TOKEN"
_MQTT_HOST_ENV = "MQTT_BROKER_HOST"
_MQTT_PORT_ENV = "MQTT_BROKER_PORT"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    token: Optional[str] = None
    mqtt_host: str = DEFAULT_MQTT_HOST
    mqtt_port: int = DEFAULT_MQTT_PORT


def _read_port(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if 0 < parsed < 65536 else default


def load_config(
    base_url: Optional[str] = None,
    token: Optional[str] = None,
    mqtt_host: Optional[str] = None,
    mqtt_port: Optional[int] = None,
) -> CLIConfig:
    url = base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL
    if mqtt_port is None:
        mqtt_port = _read_port(os.getenv(_MQTT_PORT_ENV), DEFAULT_MQTT_PORT)
    return CLIConfig(
        base_url=url.rstrip("/"),
        token=token or os.getenv(_TOKEN_ENV) or None,
        mqtt_host=mqtt_host or os.getenv(_MQTT_HOST_ENV) or DEFAULT_MQTT_HOST,
        mqtt_port=mqtt_port,
    )
