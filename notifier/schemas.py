# notifier/schemas.py
"""
Payload shapes at the service boundary.

Webhook bodies and queue messages carry arbitrary JSON. Everything that comes
in is first normalized to a JSON object (anything else is wrapped as
``{"type": "raw", "value": ...}``), then split into the known ``Event``
columns and an extension area stored in ``Event.payload``.
"""
import json
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

COLUMN_FIELDS = ("event_type", "audio_url", "image_url", "timestamp", "status")
# Store-owned fields are never taken from the caller
IGNORED_FIELDS = ("id", "created_at", "updated_at")


class EventIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    timestamp: Optional[str] = None
    status: Optional[str] = None

    @field_validator(*COLUMN_FIELDS, mode="before")
    @classmethod
    def _scalar_to_text(cls, value):
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (int, float, bool)):
            return str(value)
        # Nested objects are not text; keep them as JSON
        return json.dumps(value, default=str)


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    timestamp: Optional[str] = None
    status: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EventQuery(BaseModel):
    skip: Optional[int] = None
    take: Optional[int] = None
    page: Optional[int] = None
    page_size: Optional[int] = None
    event_type: Optional[str] = None
    search: Optional[str] = None


def raw_envelope(value: Any) -> Dict[str, Any]:
    return {"type": "raw", "value": value}


def normalize_payload(value: Any) -> Dict[str, Any]:
    """Map any decoded JSON value onto an object the store understands."""
    if isinstance(value, dict):
        return value
    return raw_envelope(value)


def decode_message(value: Optional[bytes]) -> Dict[str, Any]:
    """Decode a queue message body; non-JSON text is wrapped, never dropped."""
    if value is None:
        return raw_envelope("")
    text = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
    if not text:
        return raw_envelope("")
    try:
        parsed = json.loads(text)
    except ValueError:
        return raw_envelope(text)
    return normalize_payload(parsed)


def split_fields(data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return ``(columns, extras)`` for an inbound event object.

    Only columns present in ``data`` are returned, so the result can drive
    partial updates as well as inserts.
    """
    model = EventIn.model_validate(data)
    columns = model.model_dump(include=set(COLUMN_FIELDS), exclude_unset=True)
    extras = {
        key: value
        for key, value in (model.model_extra or {}).items()
        if key not in IGNORED_FIELDS
    }
    return columns, extras


def serialize_event(row) -> Dict[str, Any]:
    return EventOut.model_validate(row).model_dump(mode="json")
