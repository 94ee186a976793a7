"""
submission_queue.py - Durable queue of survey submissions

Submissions are written synchronously by the foreground and drained by the
sync engine. Only the sync engine removes records, and only the ones the
server confirmed.
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .local_store import (
    LocalStore,
    STORAGE_KEY_AMBIGUOUS_COUNT,
    STORAGE_KEY_QUARANTINE,
    STORAGE_KEY_QUEUE,
)
from .records import QueueRecord, utc_now_iso

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SubmissionQueue")


class SubmissionQueue:
    """Ordered, durable list of QueueRecords (oldest first)."""

    def __init__(self, store: LocalStore, max_size: int = 1000, warning_threshold: Optional[int] = None):
        self.store = store
        self.max_size = max_size
        self.warning_threshold = warning_threshold if warning_threshold is not None else int(max_size * 0.8)

    # ==================== Reads ====================

    def _raw(self) -> List[Any]:
        entries = self.store.get(STORAGE_KEY_QUEUE)
        if entries is None:
            return []
        if not isinstance(entries, list):
            logger.error(f"Queue entry has unexpected type {type(entries).__name__}, treating as empty")
            return []
        return entries

    def snapshot(self) -> List[Any]:
        """The raw stored entries, as of now."""
        return self._raw()

    def records(self) -> List[QueueRecord]:
        valid, _ = self.partition(self._raw())
        return valid

    def count(self) -> int:
        return len(self._raw())

    def ids(self) -> List[str]:
        return [record.id for record in self.records()]

    @staticmethod
    def partition(entries: Iterable[Any]) -> Tuple[List[QueueRecord], List[Tuple[Any, str]]]:
        """Split stored entries into valid records and (entry, reason) pairs."""
        valid = []
        invalid = []
        for entry in entries:
            try:
                valid.append(QueueRecord.from_dict(entry))
            except ValidationError as e:
                logger.error(f"Record failed validation: {e}")
                reason = "missing_id" if isinstance(entry, dict) and not entry.get("id") else "malformed"
                invalid.append((entry, reason))
        return valid, invalid

    # ==================== Writes ====================

    def enqueue(self, payload: Dict[str, Any], record_id: Optional[str] = None) -> QueueRecord:
        """
        Append a submission.

        An id that is already queued is not added twice. When the queue is at
        max_size the oldest record is evicted first. Store errors propagate.
        """
        record = QueueRecord.create(payload, record_id=record_id)
        return self.add(record)

    def add(self, record: QueueRecord) -> QueueRecord:
        queue = self._raw()

        for entry in queue:
            if isinstance(entry, dict) and entry.get("id") == record.id:
                logger.info(f"Record {record.id} already queued, skipping duplicate")
                return QueueRecord.from_dict(entry)

        while len(queue) >= self.max_size:
            evicted = queue.pop(0)
            evicted_id = evicted.get("id") if isinstance(evicted, dict) else None
            logger.warning(f"Queue full ({self.max_size} records) - evicting oldest entry {evicted_id}")

        queue.append(record.to_dict())
        self.store.set(STORAGE_KEY_QUEUE, queue)

        if len(queue) >= self.warning_threshold:
            logger.warning(f"Queue at {len(queue)}/{self.max_size} records - sync soon")
        return record

    def remove_ids(self, accepted_ids: Iterable[str]) -> int:
        """
        Remove records whose id was confirmed. Re-reads the store so records
        enqueued after a sync snapshot are kept. Returns the number removed.
        """
        accepted = set(accepted_ids)
        queue = self._raw()

        kept = []
        removed = 0
        for entry in queue:
            entry_id = entry.get("id") if isinstance(entry, dict) else None
            if entry_id and entry_id in accepted:
                logger.info(f"Removing synced record: {entry_id}")
                removed += 1
            else:
                kept.append(entry)

        if kept:
            self.store.set(STORAGE_KEY_QUEUE, kept)
            logger.info(f"{removed} records synced. {len(kept)} records remaining.")
        else:
            self.store.remove(STORAGE_KEY_QUEUE)
            logger.info(f"All {removed} records synced. Queue cleared.")
        return removed

    def clear(self):
        self.store.remove(STORAGE_KEY_QUEUE)
        logger.info("Queue cleared")

    # ==================== Quarantine ====================

    def quarantine(self, entries: Iterable[Tuple[Any, str]]) -> int:
        """
        Move entries out of the live queue into the quarantine list.

        `entries` are (stored entry, reason) pairs. Matching is by identity
        of the stored JSON value, so id-less entries can be moved too.
        """
        entries = list(entries)
        if not entries:
            return 0

        moving = [entry for entry, _ in entries]
        queue = self._raw()
        remaining = list(queue)
        for entry in moving:
            if entry in remaining:
                remaining.remove(entry)

        quarantined = self.quarantined()
        now = utc_now_iso()
        for entry, reason in entries:
            quarantined.append({"reason": reason, "quarantinedAt": now, "entry": entry})

        # One transaction: on failure both lists are left as they were.
        self.store.set_many({
            STORAGE_KEY_QUARANTINE: quarantined,
            STORAGE_KEY_QUEUE: remaining or None,
        })

        logger.warning(f"Quarantined {len(entries)} queue entries")
        return len(entries)

    def quarantined(self) -> List[Dict[str, Any]]:
        entries = self.store.get(STORAGE_KEY_QUARANTINE)
        return entries if isinstance(entries, list) else []

    def restore_quarantined(self) -> int:
        """Put every quarantined entry that now validates back on the queue."""
        restored = 0
        still_bad = []
        for item in self.quarantined():
            entry = item.get("entry") if isinstance(item, dict) else None
            try:
                record = QueueRecord.from_dict(entry)
            except ValidationError:
                still_bad.append(item)
                continue
            self.add(record)
            restored += 1

        if still_bad:
            self.store.set(STORAGE_KEY_QUARANTINE, still_bad)
        else:
            self.store.remove(STORAGE_KEY_QUARANTINE)
        logger.info(f"Restored {restored} quarantined records, {len(still_bad)} still invalid")
        return restored

    def clear_quarantine(self):
        self.store.remove(STORAGE_KEY_QUARANTINE)

    # ==================== Ambiguous cycles ====================

    def ambiguous_cycles(self) -> int:
        value = self.store.get(STORAGE_KEY_AMBIGUOUS_COUNT, 0)
        return value if isinstance(value, int) else 0

    def record_ambiguous_cycle(self) -> int:
        count = self.ambiguous_cycles() + 1
        self.store.set(STORAGE_KEY_AMBIGUOUS_COUNT, count)
        return count

    def reset_ambiguous_cycles(self):
        self.store.remove(STORAGE_KEY_AMBIGUOUS_COUNT)

    def status(self) -> Dict[str, Any]:
        count = self.count()
        return {
            "unsynced": count,
            "maxSize": self.max_size,
            "nearCapacity": count >= self.warning_threshold,
            "quarantined": len(self.quarantined()),
            "ambiguousCycles": self.ambiguous_cycles(),
            "checkedAt": time.time(),
        }
