"""
records.py - Tagged record schemas for the submission queue and analytics batch.

Records are validated when they cross the store boundary. Anything that does not
parse is reported as a ValidationError so the caller can quarantine it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ValidationError

EVENT_SURVEY_COMPLETED = "survey_completed"
EVENT_SURVEY_ABANDONED = "survey_abandoned"

# Keys the record owns; everything else in the stored object is survey payload.
_QUEUE_RESERVED = ("id", "createdAt")
_EVENT_RESERVED = ("timestamp", "eventType", "sessionId", "kioskId")


def generate_id() -> str:
    """Generate a unique id for a survey submission."""
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class QueueRecord:
    """One survey submission awaiting delivery."""

    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    # None for stored entries that never had one; not invented on read
    created_at: Optional[str] = field(default_factory=utc_now_iso)

    @classmethod
    def create(cls, payload: Dict[str, Any], record_id: Optional[str] = None) -> "QueueRecord":
        answers = {k: v for k, v in (payload or {}).items() if k not in _QUEUE_RESERVED}
        return cls(id=record_id or generate_id(), payload=answers)

    @classmethod
    def from_dict(cls, data: Any) -> "QueueRecord":
        if not isinstance(data, dict):
            raise ValidationError(f"Queue entry is not an object: {type(data).__name__}")

        record_id = data.get("id")
        if not record_id or not isinstance(record_id, str):
            raise ValidationError("Queue entry is missing an id")

        created_at = data.get("createdAt")
        if created_at is None and isinstance(data.get("timestamp"), str):
            created_at = data["timestamp"]
        if created_at is not None and not isinstance(created_at, str):
            raise ValidationError(f"Queue entry {record_id} has a non-string createdAt")

        payload = {k: v for k, v in data.items() if k not in _QUEUE_RESERVED}
        return cls(id=record_id, payload=payload, created_at=created_at)

    def to_dict(self) -> Dict[str, Any]:
        # Flat shape: the receiver maps answer fields straight onto columns.
        data = dict(self.payload)
        data["id"] = self.id
        if self.created_at is not None:
            data["createdAt"] = self.created_at
        return data


@dataclass(frozen=True)
class AnalyticsEvent:
    """A lightweight telemetry event. Never acknowledged individually."""

    event_type: str
    kiosk_id: str
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def question_id(self) -> Optional[str]:
        return self.fields.get("questionId")

    @property
    def total_time_seconds(self) -> Optional[float]:
        value = self.fields.get("totalTimeSeconds")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    @classmethod
    def from_dict(cls, data: Any) -> "AnalyticsEvent":
        if not isinstance(data, dict):
            raise ValidationError(f"Analytics entry is not an object: {type(data).__name__}")

        event_type = data.get("eventType")
        if not event_type or not isinstance(event_type, str):
            raise ValidationError("Analytics entry is missing an eventType")

        return cls(
            event_type=event_type,
            kiosk_id=str(data.get("kioskId") or "UNKNOWN"),
            session_id=data.get("sessionId"),
            timestamp=data.get("timestamp") or utc_now_iso(),
            fields={k: v for k, v in data.items() if k not in _EVENT_RESERVED},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "timestamp": self.timestamp,
            "eventType": self.event_type,
            "sessionId": self.session_id,
            "kioskId": self.kiosk_id,
        }
        data.update(self.fields)
        return data
