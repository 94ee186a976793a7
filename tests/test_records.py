"""Tests for queue record and analytics event schemas."""

import uuid

import pytest

from kiosk_sync.services.errors import ValidationError
from kiosk_sync.services.records import AnalyticsEvent, QueueRecord, utc_now_iso


def test_create_assigns_uuid_and_timestamp() -> None:
    record = QueueRecord.create({"q1": "yes"})

    assert uuid.UUID(record.id).version == 4
    assert record.created_at.endswith("Z")
    assert record.payload == {"q1": "yes"}


def test_create_strips_reserved_keys_from_payload() -> None:
    record = QueueRecord.create({"q1": "yes", "id": "spoofed", "createdAt": "x"}, record_id="real")
    assert record.id == "real"
    assert record.payload == {"q1": "yes"}


def test_serialised_form_is_flat() -> None:
    record = QueueRecord(id="abc", payload={"q1": "yes", "q2": 4}, created_at="2024-01-01T00:00:00Z")
    assert record.to_dict() == {"q1": "yes", "q2": 4, "id": "abc", "createdAt": "2024-01-01T00:00:00Z"}
    assert QueueRecord.from_dict(record.to_dict()) == record


def test_from_dict_accepts_legacy_timestamp() -> None:
    record = QueueRecord.from_dict({"id": "abc", "timestamp": "2024-01-01T00:00:00Z", "q1": "no"})
    assert record.created_at == "2024-01-01T00:00:00Z"


def test_stored_entry_without_timestamp_stays_stable() -> None:
    entry = {"id": "abc", "q1": "no"}
    first = QueueRecord.from_dict(entry)
    second = QueueRecord.from_dict(entry)

    assert first.created_at is None
    assert first.to_dict() == second.to_dict() == {"q1": "no", "id": "abc"}


@pytest.mark.parametrize("entry", [
    {"q1": "yes"},
    {"id": "", "q1": "yes"},
    {"id": 42},
    "not-a-dict",
    None,
    {"id": "abc", "createdAt": 12345},
])
def test_from_dict_rejects_malformed(entry) -> None:
    with pytest.raises(ValidationError):
        QueueRecord.from_dict(entry)


def test_analytics_event_fields_round_trip() -> None:
    event = AnalyticsEvent(
        event_type="survey_abandoned",
        kiosk_id="KIOSK-1",
        session_id="s1",
        timestamp=utc_now_iso(),
        fields={"questionId": "q3", "totalTimeSeconds": 12},
    )
    data = event.to_dict()
    assert data["eventType"] == "survey_abandoned"
    assert data["questionId"] == "q3"

    parsed = AnalyticsEvent.from_dict(data)
    assert parsed == event
    assert parsed.question_id == "q3"
    assert parsed.total_time_seconds == 12.0


def test_analytics_event_requires_type() -> None:
    with pytest.raises(ValidationError):
        AnalyticsEvent.from_dict({"sessionId": "s1"})


def test_total_time_ignores_non_numbers() -> None:
    event = AnalyticsEvent(event_type="survey_completed", kiosk_id="K", fields={"totalTimeSeconds": "12"})
    assert event.total_time_seconds is None
