"""
analytics.py - Durable analytics batch

Telemetry events are appended synchronously and shipped as one summary
payload. The batch is atomic: cleared on full success, retained otherwise.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .local_store import LocalStore, STORAGE_KEY_ANALYTICS, STORAGE_KEY_LAST_ANALYTICS_SYNC
from .records import (
    AnalyticsEvent,
    EVENT_SURVEY_ABANDONED,
    EVENT_SURVEY_COMPLETED,
    utc_now_iso,
)
from .errors import ValidationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Analytics")


def build_summary(events: List[AnalyticsEvent], kiosk_id: str, raw_events: Optional[List[Dict]] = None) -> Dict[str, Any]:
    """
    Aggregate events into the analytics payload.

    completionRate is a percentage of completions over completions plus
    abandonments; avgCompletionTimeSeconds averages positive
    totalTimeSeconds of completions. Both are rounded to one decimal.
    """
    completions = [e for e in events if e.event_type == EVENT_SURVEY_COMPLETED]
    abandonments = [e for e in events if e.event_type == EVENT_SURVEY_ABANDONED]

    dropoff_by_question: Dict[str, int] = {}
    for event in abandonments:
        question_id = str(event.question_id) if event.question_id is not None else "unknown"
        dropoff_by_question[question_id] = dropoff_by_question.get(question_id, 0) + 1

    completion_times = [
        e.total_time_seconds for e in completions
        if e.total_time_seconds is not None and e.total_time_seconds > 0
    ]
    avg_completion_time = sum(completion_times) / len(completion_times) if completion_times else 0.0

    finished = len(completions) + len(abandonments)
    completion_rate = (len(completions) / finished * 100) if completions else 0.0

    return {
        "analyticsType": "summary",
        "timestamp": utc_now_iso(),
        "kioskId": kiosk_id,
        "totalCompletions": len(completions),
        "totalAbandonments": len(abandonments),
        "completionRate": round(completion_rate, 1),
        "avgCompletionTimeSeconds": round(avg_completion_time, 1),
        "dropoffByQuestion": dropoff_by_question,
        "rawEvents": raw_events if raw_events is not None else [e.to_dict() for e in events],
    }


class AnalyticsBatcher:
    def __init__(self, store: LocalStore, kiosk_id: str, max_size: int = 1000,
                 sync_interval_ms: int = 86400000, clock=time.time):
        self.store = store
        self.kiosk_id = kiosk_id
        self.max_size = max_size
        self.sync_interval_ms = sync_interval_ms
        self.clock = clock

    def _raw(self) -> List[Any]:
        entries = self.store.get(STORAGE_KEY_ANALYTICS)
        return entries if isinstance(entries, list) else []

    def record(self, event_type: str, session_id: Optional[str] = None, **fields) -> AnalyticsEvent:
        """Append an event, evicting the oldest once the batch is at capacity."""
        event = AnalyticsEvent(
            event_type=event_type,
            kiosk_id=self.kiosk_id,
            session_id=session_id,
            fields=fields,
        )
        self.add(event)
        return event

    def add(self, event: AnalyticsEvent):
        batch = self._raw()
        while len(batch) >= self.max_size:
            batch.pop(0)
            logger.warning(f"Analytics at capacity ({self.max_size}) - removing oldest entry")
        batch.append(event.to_dict())
        self.store.set(STORAGE_KEY_ANALYTICS, batch)

    def events(self) -> List[AnalyticsEvent]:
        return self._parse(self._raw())

    @staticmethod
    def _parse(raw: List[Any]) -> List[AnalyticsEvent]:
        events = []
        for entry in raw:
            try:
                events.append(AnalyticsEvent.from_dict(entry))
            except ValidationError as e:
                logger.warning(f"Skipping malformed analytics entry: {e}")
        return events

    def count(self) -> int:
        return len(self._raw())

    def snapshot(self) -> List[Any]:
        return self._raw()

    def summary(self, raw: Optional[List[Any]] = None) -> Dict[str, Any]:
        raw = self._raw() if raw is None else raw
        return build_summary(self._parse(raw), self.kiosk_id, raw_events=raw)

    def clear(self):
        self.store.remove(STORAGE_KEY_ANALYTICS)

    def remove_batch(self, sent: List[Any]) -> int:
        """Drop a delivered batch, keeping events recorded after it was read."""
        remaining = self._raw()
        for entry in sent:
            if entry in remaining:
                remaining.remove(entry)
        if remaining:
            self.store.set(STORAGE_KEY_ANALYTICS, remaining)
        else:
            self.clear()
        return len(sent)

    def last_sync(self) -> Optional[int]:
        value = self.store.get(STORAGE_KEY_LAST_ANALYTICS_SYNC)
        return value if isinstance(value, (int, float)) else None

    def mark_synced(self):
        self.store.set(STORAGE_KEY_LAST_ANALYTICS_SYNC, int(self.clock() * 1000))

    def should_sync(self) -> bool:
        """True when never synced or the sync interval has elapsed."""
        last = self.last_sync()
        now_ms = self.clock() * 1000
        return last is None or (now_ms - last) >= self.sync_interval_ms
