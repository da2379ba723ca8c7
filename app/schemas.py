"""Pydantic schemas for stored documents and the HTTP API layer."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    """Account roles known to the authorization gate."""

    admin = "admin"
    user = "user"


class StoredDocument(CamelModel):
    """Identity plus soft-delete and audit metadata shared by every collection."""

    id: str = Field(default_factory=new_id)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SensorDataRecord(StoredDocument):
    """One persisted telemetry sample.

    ``is_alert`` and ``alert_message`` are always produced by the threshold
    classifier; callers never set them directly.
    """

    device_id: str = Field(..., min_length=1)
    temperature: float
    humidity: float
    power_usage: float
    timestamp: datetime
    location: Optional[str] = None
    is_alert: bool = False
    alert_message: Optional[str] = None


class AccountRecord(StoredDocument):
    """Stored user or admin account."""

    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    password_hash: str
    role: Role = Role.user
    token: Optional[str] = None
    last_login: Optional[datetime] = None
    is_active: bool = True


class SensorDataCreate(CamelModel):
    """Payload for creating a reading through the API."""

    device_id: str = Field(..., min_length=1, description="Unique identifier for the IoT device.")
    temperature: float = Field(..., ge=-50, le=100, description="Temperature in Celsius.")
    humidity: float = Field(..., ge=0, le=100, description="Relative humidity percentage.")
    power_usage: float = Field(..., ge=0, description="Power usage in watts.")
    location: Optional[str] = None


class GenerateSensorDataRequest(CamelModel):
    count: int = Field(..., ge=1, le=10000, description="Number of records to generate.")
    device_id_prefix: str = Field(default="device_", min_length=1)
    location: Optional[str] = None


class GenerateSensorDataResult(CamelModel):
    generated: int = Field(..., ge=0)
    message: str


class SensorStats(CamelModel):
    """Aggregate metrics over a time window; all zero when no data matched."""

    avg_temperature: float = 0
    avg_humidity: float = 0
    avg_power_usage: float = 0
    max_temperature: float = 0
    min_temperature: float = 0
    max_humidity: float = 0
    min_humidity: float = 0
    total_alerts: int = Field(default=0, ge=0)
    count: int = Field(default=0, ge=0)


class DeviceSummary(CamelModel):
    device_id: str
    count: int = Field(..., ge=0)
    alert_count: int = Field(..., ge=0)
    last_seen: Optional[datetime] = None


class LoginRequest(CamelModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=20)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=8, max_length=20)
    new_password: str = Field(..., min_length=8, max_length=20)

    @field_validator("new_password")
    @classmethod
    def _check_strength(cls, value: str) -> str:
        has_upper = re.search(r"[A-Z]", value) is not None
        has_lower = re.search(r"[a-z]", value) is not None
        has_digit_or_symbol = re.search(r"[\d\W]", value) is not None
        if not (has_upper and has_lower and has_digit_or_symbol):
            raise ValueError(
                "Password is too weak. It must contain at least one uppercase letter, "
                "one lowercase letter, and one number or special character."
            )
        return value


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(CamelModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    name: str = Field(..., min_length=1)
    username: Optional[str] = None
    # bcrypt only considers the first 72 bytes.
    password: str = Field(..., min_length=6, max_length=72)


class UserResponse(CamelModel):
    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    role: Role
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: AccountRecord) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            username=account.username,
            name=account.name,
            role=account.role,
            is_active=account.is_active,
            last_login=account.last_login,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class PaginationMetadata(CamelModel):
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)
    has_next_page: bool = False
    next_page_token: Optional[str] = None


class ApiResponse(CamelModel, Generic[T]):
    """Envelope returned by every REST endpoint."""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
    metadata: Optional[PaginationMetadata] = None


class HealthStatus(CamelModel):
    status: str = "ok"
    mqtt_connected: bool = False
    realtime_clients: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)

