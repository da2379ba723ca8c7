from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_STORE_PATH_ENV = "DASHBOARD_STORE_PATH"
_WRITE_TIMEOUT_ENV = "STORE_WRITE_TIMEOUT_SECONDS"
_LOG_LEVEL_ENV = "LOG_LEVEL"
_MQTT_ENABLED_ENV = "MQTT_ENABLED"
_MQTT_HOST_ENV = "MQTT_BROKER_HOST"
_MQTT_PORT_ENV = "MQTT_BROKER_PORT"
_MQTT_CLIENT_ID_ENV = "MQTT_CLIENT_ID"
_MQTT_USERNAME_ENV = "MQTT_USERNAME"
_MQTT_PASSWORD_ENV = "MQTT_PASSWORD"
_MQTT_STATUS_TOPIC_ENV = "MQTT_STATUS_TOPIC"
_SECRET_KEY_ENV = "AUTH_SECRET_KEY"
_TOKEN_TTL_ENV = "AUTH_TOKEN_TTL_MINUTES"
_ADMIN_EMAIL_ENV = "DEFAULT_ADMIN_EMAIL"
_ADMIN_PASSWORD_ENV = "DEFAULT_ADMIN_PASSWORD"
_USER_EMAIL_ENV = "DEFAULT_USER_EMAIL"
_USER_PASSWORD_ENV = "DEFAULT_USER_PASSWORD"

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    store_path: Optional[str]
    store_write_timeout: float
    log_level: str
    mqtt_enabled: bool
    mqtt_host: str
    mqtt_port: int
    mqtt_client_id: str
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_status_topic: str
    secret_key: str
    token_ttl_minutes: int
    default_admin_email: str
    default_admin_password: str
    default_user_email: str
    default_user_password: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        store_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/store"),
        store_write_timeout=_read_positive_float(_WRITE_TIMEOUT_ENV, 5.0),
        log_level=_read_log_level("INFO"),
        mqtt_enabled=_read_flag(_MQTT_ENABLED_ENV, False),
        mqtt_host=_read_str_env(_MQTT_HOST_ENV, "localhost"),
        mqtt_port=_read_positive_int(_MQTT_PORT_ENV, 1883),
        mqtt_client_id=_read_str_env(_MQTT_CLIENT_ID_ENV, "iot-dashboard-backend"),
        mqtt_username=_read_optional_env(_MQTT_USERNAME_ENV, None),
        mqtt_password=_read_optional_env(_MQTT_PASSWORD_ENV, None),
        mqtt_status_topic=_read_str_env(_MQTT_STATUS_TOPIC_ENV, "iot/dashboard/status"),
        secret_key=_read_str_env(_SECRET_KEY_ENV, "change-me-in-production"),
        token_ttl_minutes=_read_positive_int(_TOKEN_TTL_ENV, 60),
        default_admin_email=_read_str_env(_ADMIN_EMAIL_ENV, "admin@iot-dashboard.com"),
        default_admin_password=_read_str_env(_ADMIN_PASSWORD_ENV, "admin123"),
        default_user_email=_read_str_env(_USER_EMAIL_ENV, "user1@iot-dashboard.com"),
        default_user_password=_read_str_env(_USER_PASSWORD_ENV, "User@2525"),
    )
