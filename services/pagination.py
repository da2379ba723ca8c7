"""Offset and cursor pagination over an in-memory, totally ordered collection.

Items are ordered by the requested field with the record ``id`` as tie-break,
both in the requested direction. A ``next_page_token`` is the base64 encoding
of ``{"<sortField>": <value>, "id": "<id>"}`` for the last item served.
Tokens are untrusted client input: anything that does not decode to that
exact shape is logged and ignored.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Sequence, Tuple, TypeVar

from models.records import Page, PageCursor, PageRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TOKEN_LENGTH = 2048


class InvalidCursorError(ValueError):
    """Raised when a pagination token cannot be decoded."""


def _wire_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def encode_cursor(cursor: PageCursor) -> str:
    payload = {cursor.sort_field: _wire_value(cursor.sort_value), "id": cursor.id}
    raw = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(token: str, sort_field: str) -> PageCursor:
    """Decode ``token`` for ``sort_field`` or raise :class:`InvalidCursorError`."""
    if not token or len(token) > MAX_TOKEN_LENGTH:
        raise InvalidCursorError("token is empty or too long")
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
        payload = json.loads(raw)
    except (binascii.Error, UnicodeError, ValueError, RecursionError) as exc:
        raise InvalidCursorError("token is not base64-encoded JSON") from exc

    if not isinstance(payload, dict) or set(payload) != {sort_field, "id"}:
        raise InvalidCursorError(f"token does not describe a position on {sort_field!r}")
    record_id = payload["id"]
    if not isinstance(record_id, str) or not record_id:
        raise InvalidCursorError("token id must be a non-empty string")
    return PageCursor(sort_field=sort_field, sort_value=payload[sort_field], id=record_id)


def _coerce_to_sample(value: Any, sample: Any) -> Any:
    """Convert a decoded token value to the type of the collection's values."""
    if value is None or sample is None:
        return value
    if isinstance(sample, datetime):
        if not isinstance(value, str):
            raise InvalidCursorError("expected an ISO-8601 timestamp")
        candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise InvalidCursorError("invalid timestamp in token") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if isinstance(sample, (int, float)) and not isinstance(sample, bool):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCursorError("expected a numeric sort value")
        return value
    if isinstance(sample, str):
        if not isinstance(value, str):
            raise InvalidCursorError("expected a string sort value")
        return value
    raise InvalidCursorError(f"unsupported sort value type {type(sample).__name__}")


def _sort_key(value: Any, record_id: str) -> Tuple[bool, Any, str]:
    return (value is not None, value, record_id)


def paginate(
    items: Sequence[T],
    request: PageRequest,
    sort_fields: Mapping[str, str],
) -> Page[T]:
    """Return one page of ``items``.

    ``sort_fields`` maps each permitted wire field name to the attribute it
    reads. Offset mode is used when no token is supplied or the token cannot
    be decoded; cursor mode otherwise.
    """
    attribute = sort_fields.get(request.sort_by)
    if attribute is None:
        raise ValueError(f"Cannot sort by {request.sort_by!r}.")

    def key(item: T) -> Tuple[bool, Any, str]:
        return _sort_key(getattr(item, attribute), getattr(item, "id"))

    ordered: List[T] = sorted(items, key=key, reverse=request.descending)
    total = len(ordered)

    remaining: List[T] | None = None
    if request.next_page_token:
        try:
            cursor = decode_cursor(request.next_page_token, request.sort_by)
            sample = next(
                (getattr(item, attribute) for item in ordered if getattr(item, attribute) is not None),
                None,
            )
            position = _sort_key(_coerce_to_sample(cursor.sort_value, sample), cursor.id)
        except InvalidCursorError as exc:
            logger.warning(
                "Ignoring invalid next page token",
                extra={"reason": str(exc)},
            )
        else:
            if request.descending:
                remaining = [item for item in ordered if key(item) < position]
            else:
                remaining = [item for item in ordered if key(item) > position]

    if remaining is None:
        start = (request.page - 1) * request.limit
        remaining = ordered[start:]

    has_next_page = len(remaining) > request.limit
    page_items = remaining[: request.limit]

    next_page_token = None
    if has_next_page and page_items:
        last = page_items[-1]
        next_page_token = encode_cursor(
            PageCursor(
                sort_field=request.sort_by,
                sort_value=getattr(last, attribute),
                id=getattr(last, "id"),
            )
        )

    return Page(
        items=page_items,
        total=total,
        page=request.page,
        limit=request.limit,
        has_next_page=has_next_page,
        next_page_token=next_page_token,
    )
