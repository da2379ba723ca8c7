"""Domain values shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from math import ceil
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class SensorMetrics:
    """The three measured quantities of a reading."""

    temperature: float
    humidity: float
    power_usage: float


@dataclass(slots=True, frozen=True)
class AlertClassification:
    """Outcome of running the threshold rules over a reading."""

    is_alert: bool
    message: Optional[str] = None


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


@dataclass(slots=True)
class PageRequest:
    """Offset or cursor page request.

    ``sort_by`` is the wire (camelCase) field name. When ``next_page_token`` is
    set, ``page`` is ignored.
    """

    page: int = 1
    limit: int = 10
    sort_by: str = "createdAt"
    sort_order: SortOrder = SortOrder.desc
    next_page_token: Optional[str] = None

    @property
    def descending(self) -> bool:
        return self.sort_order is SortOrder.desc


@dataclass(slots=True, frozen=True)
class PageCursor:
    """Decoded pagination token: the position of the last item already served."""

    sort_field: str
    sort_value: Any
    id: str


@dataclass(slots=True)
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
    has_next_page: bool = False
    next_page_token: Optional[str] = None

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return ceil(self.total / self.limit)
