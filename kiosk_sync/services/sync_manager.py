"""
sync_manager.py - Store-and-Forward Sync Engine

Delivers queued survey submissions and the analytics batch to the upstream
endpoints. Attempts are serialised: a second request waits for the first to
finish instead of racing it over the same stored list.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .analytics import AnalyticsBatcher
from .errors import (
    AmbiguousAcceptanceError,
    ConnectivityError,
    ServerRejectionError,
    StorageError,
    StorageExhaustedError,
    TransportError,
)
from .local_store import LocalStore, STORAGE_KEY_LAST_SYNC
from .network_handler import RequestSender
from .offline_mode import ConnectivityMonitor
from .records import utc_now_iso
from .status import StatusReporter
from .submission_queue import SubmissionQueue

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SyncManager")


class SyncOutcome(Enum):
    SUCCESS = "success"        # everything sent was accepted
    PARTIAL = "partial"        # a strict subset was accepted
    EMPTY = "empty"            # nothing to send
    DEFERRED = "deferred"      # offline; no retry consumed
    AMBIGUOUS = "ambiguous"    # 2xx but zero ids confirmed
    INVALID = "invalid"        # nothing valid to send
    FAILED = "failed"          # retries exhausted or server refused


@dataclass
class SyncResult:
    outcome: SyncOutcome
    sent: int = 0
    accepted: List[str] = field(default_factory=list)
    remaining: int = 0
    quarantined: int = 0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (SyncOutcome.SUCCESS, SyncOutcome.PARTIAL, SyncOutcome.EMPTY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.outcome.value,
            "sent": self.sent,
            "accepted": list(self.accepted),
            "remaining": self.remaining,
            "quarantined": self.quarantined,
            "message": self.message,
        }


def _successful_ids(body: Any) -> List[str]:
    if not isinstance(body, dict) or not isinstance(body.get("successfulIds"), list):
        raise ServerRejectionError("Response is missing a successfulIds list")
    return [str(i) for i in body["successfulIds"] if i is not None]


def _confirmed_ids(accepted: List[str], sent_ids: List[str]) -> List[str]:
    """Ids both sent and confirmed. Raises AmbiguousAcceptanceError when that is none."""
    sent = set(sent_ids)
    unknown = set(accepted) - sent
    if unknown:
        logger.warning(f"Server confirmed {len(unknown)} ids that were not sent, ignoring")
    confirmed = [i for i in accepted if i in sent]
    if not confirmed:
        raise AmbiguousAcceptanceError("Server returned zero successful IDs")
    return confirmed


def _analytics_success(body: Any) -> bool:
    if not isinstance(body, dict) or not isinstance(body.get("success"), bool):
        raise ServerRejectionError("Response is missing a success flag")
    return body["success"]


class SyncManager:
    """
    Drains the SubmissionQueue and AnalyticsBatcher.

    Never raises to its caller: every attempt ends in a SyncResult and the
    data stays queued unless the server confirmed it.
    """

    def __init__(
        self,
        kiosk_id: str,
        sync_url: str,
        analytics_url: str,
        store: LocalStore,
        queue: SubmissionQueue,
        analytics: AnalyticsBatcher,
        connectivity: ConnectivityMonitor,
        sender: RequestSender,
        status: Optional[StatusReporter] = None,
        max_ambiguous_cycles: int = 5,
        clock=time.time,
    ):
        self.kiosk_id = kiosk_id
        self.sync_url = sync_url
        self.analytics_url = analytics_url
        self.store = store
        self.queue = queue
        self.analytics = analytics
        self.connectivity = connectivity
        self.sender = sender
        self.status = status or StatusReporter()
        self.max_ambiguous_cycles = max_ambiguous_cycles
        self.clock = clock

        self._lock = asyncio.Lock()
        self._pending: set = set()

        connectivity.on_reconnect(self._on_reconnect)
        logger.info(f"SyncManager initialized with endpoint: {self.sync_url}")

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def _on_reconnect(self):
        """Connection restored: data first, then analytics."""
        logger.info("Reconnect detected - triggering sync")
        try:
            task = asyncio.get_running_loop().create_task(self.sync_all())
        except RuntimeError:
            logger.warning("Reconnect outside the event loop, sync left to the scheduler")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def sync_all(self, is_manual: bool = False) -> Dict[str, SyncResult]:
        data = await self.sync_submissions(is_manual)
        analytics = await self.sync_analytics(is_manual)
        return {"data": data, "analytics": analytics}

    async def auto_sync(self) -> Dict[str, SyncResult]:
        """Periodic entry point: data always, analytics when due."""
        logger.info("Running periodic sync...")
        results = {"data": await self.sync_submissions(False)}
        if self.analytics.should_sync():
            results["analytics"] = await self.sync_analytics(False)
        return results

    # ==================== Submissions ====================

    async def sync_submissions(self, is_manual: bool = False) -> SyncResult:
        if self._lock.locked():
            logger.info("Sync in progress, queued behind it")
        async with self._lock:
            return await self._sync_submissions(is_manual)

    def _require_online(self):
        if not self.connectivity.is_online():
            raise ConnectivityError(f"Connectivity is {self.connectivity.get_current_mode().value}")

    async def _sync_submissions(self, is_manual: bool) -> SyncResult:
        try:
            self._require_online()
            return await self._deliver_submissions(is_manual)
        except ConnectivityError as e:
            logger.warning(f"Offline. Skipping sync. ({e})")
            if is_manual:
                await self.status.error("No internet connection. Sync deferred.")
            return SyncResult(SyncOutcome.DEFERRED, remaining=self.queue.count(), message="offline")
        except StorageError as e:
            logger.error(f"Sync storage error: {e}")
            self.store.log_activity('sync_error', 'pending', str(e))
            if isinstance(e, StorageExhaustedError):
                await self.status.error("Storage limit reached. Please sync data or contact support.")
            return SyncResult(SyncOutcome.FAILED, remaining=self.queue.count(), message=str(e))

    async def _quarantine(self, entries) -> int:
        """Move entries to quarantine. On a store error they stay queued and 0 is returned."""
        try:
            return self.queue.quarantine(entries)
        except StorageError as e:
            logger.error(f"Could not quarantine {len(entries)} entries, leaving them queued: {e}")
            self.store.log_activity('quarantine_failed', 'pending', str(e))
            if isinstance(e, StorageExhaustedError):
                await self.status.error("Storage limit reached. Please sync data or contact support.")
            return 0

    async def _deliver_submissions(self, is_manual: bool) -> SyncResult:
        snapshot = self.queue.snapshot()
        if not snapshot:
            logger.info("Submission queue is empty.")
            if is_manual:
                await self.status.update("No records to sync")
            return SyncResult(SyncOutcome.EMPTY)

        valid, invalid = self.queue.partition(snapshot)
        quarantined = 0
        if invalid:
            logger.warning(f"{len(invalid)} invalid records filtered out")
            quarantined = await self._quarantine(invalid)

        if not valid:
            logger.error("No valid submissions found (all missing IDs)")
            self.store.log_activity('sync_invalid', 'failed', f"{len(invalid)} invalid records quarantined")
            await self.status.error("Data validation failed. Invalid records were quarantined.")
            return SyncResult(SyncOutcome.INVALID, quarantined=quarantined, message="no valid records")

        sent_ids = [record.id for record in valid]
        logger.info(f"Syncing {len(valid)} submissions...")
        self.store.log_activity('sync_start', 'pending', f"Syncing {len(valid)} submissions")
        if is_manual:
            await self.status.update(f"Syncing {len(valid)} records...")

        payload = {
            "submissions": [record.to_dict() for record in valid],
            "kioskId": self.kiosk_id,
            "timestamp": utc_now_iso(),
        }

        try:
            accepted = await self.sender.send(self.sync_url, payload, validate=_successful_ids)
        except (TransportError, ServerRejectionError) as e:
            logger.error(f"Sync failed after retries: {e}")
            self.store.log_activity('sync_failed', 'pending', str(e))
            if is_manual:
                await self.status.error(f"Sync failed: {e}. Data saved locally.")
            return SyncResult(
                SyncOutcome.FAILED, sent=len(valid), remaining=self.queue.count(),
                quarantined=quarantined, message=str(e),
            )

        try:
            confirmed = _confirmed_ids(accepted, sent_ids)
        except AmbiguousAcceptanceError as e:
            return await self._on_ambiguous(valid, quarantined, is_manual, str(e))

        self.queue.remove_ids(confirmed)
        self.queue.reset_ambiguous_cycles()
        self.store.set(STORAGE_KEY_LAST_SYNC, int(self.clock() * 1000))

        not_accepted = len(sent_ids) - len(confirmed)
        remaining = self.queue.count()
        outcome = SyncOutcome.SUCCESS if not_accepted == 0 else SyncOutcome.PARTIAL
        self.store.log_activity('sync_complete', 'completed', f"Synced {len(confirmed)} of {len(sent_ids)}")
        logger.info(f"Sync complete: {len(confirmed)} accepted, {remaining} remain")

        if is_manual:
            if outcome == SyncOutcome.SUCCESS:
                await self.status.update(f"Sync Complete! {len(confirmed)} records cleared.")
            else:
                await self.status.update(
                    f"Partial Sync: {len(confirmed)} cleared, {remaining} remain.", level="warning"
                )
        return SyncResult(
            outcome, sent=len(sent_ids), accepted=confirmed, remaining=remaining, quarantined=quarantined,
        )

    async def _on_ambiguous(self, valid, quarantined: int, is_manual: bool, reason: str) -> SyncResult:
        cycles = self.queue.record_ambiguous_cycle()
        logger.warning(f"{reason}. Data retained. ({cycles}/{self.max_ambiguous_cycles})")
        self.store.log_activity('sync_ambiguous', 'pending', f"Zero ids confirmed, cycle {cycles}")

        if cycles >= self.max_ambiguous_cycles:
            sent = {record.id for record in valid}
            entries = [
                (entry, "ambiguous") for entry in self.queue.snapshot()
                if isinstance(entry, dict) and entry.get("id") in sent
            ]
            moved = await self._quarantine(entries)
            if moved:
                quarantined += moved
                self.queue.reset_ambiguous_cycles()
                await self.status.error(
                    f"{moved} records were never confirmed by the server and have been quarantined."
                )
        else:
            await self.status.update(
                "Sync completed but no records confirmed. Records kept in queue.", level="warning"
            )

        return SyncResult(
            SyncOutcome.AMBIGUOUS, sent=len(valid), remaining=self.queue.count(),
            quarantined=quarantined, message="zero ids confirmed",
        )

    # ==================== Analytics ====================

    async def sync_analytics(self, is_manual: bool = False) -> SyncResult:
        async with self._lock:
            try:
                return await self._sync_analytics(is_manual)
            except StorageError as e:
                logger.error(f"Analytics storage error: {e}")
                return SyncResult(SyncOutcome.FAILED, message=str(e))

    async def _sync_analytics(self, is_manual: bool) -> SyncResult:
        try:
            self._require_online()
        except ConnectivityError as e:
            logger.warning(f"Offline. Skipping analytics sync. ({e})")
            if is_manual:
                await self.status.error("No internet connection. Analytics sync deferred.")
            return SyncResult(SyncOutcome.DEFERRED, remaining=self.analytics.count(), message="offline")

        batch = self.analytics.snapshot()
        if not batch:
            logger.info("No analytics data to sync.")
            if is_manual:
                await self.status.update("No analytics data to sync.")
            return SyncResult(SyncOutcome.EMPTY)

        logger.info(f"Attempting to sync {len(batch)} analytics events...")
        payload = self.analytics.summary(batch)

        try:
            accepted = await self.sender.send(self.analytics_url, payload, validate=_analytics_success)
        except (TransportError, ServerRejectionError) as e:
            logger.error(f"Analytics sync failed: {e}")
            self.store.log_activity('analytics_failed', 'pending', str(e))
            if is_manual:
                await self.status.error("Analytics sync failed. Will retry automatically.")
            return SyncResult(SyncOutcome.FAILED, sent=len(batch), remaining=len(batch), message=str(e))

        if not accepted:
            logger.error("Analytics sync failed - server returned unsuccessful response")
            if is_manual:
                await self.status.error("Analytics sync failed. Will retry automatically.")
            return SyncResult(
                SyncOutcome.FAILED, sent=len(batch), remaining=self.analytics.count(),
                message="server reported failure",
            )

        try:
            self.analytics.remove_batch(batch)
            self.analytics.mark_synced()
        except StorageError as e:
            logger.error(f"Analytics delivered but local cleanup failed: {e}")
            return SyncResult(SyncOutcome.FAILED, sent=len(batch), message=str(e))

        self.store.log_activity('analytics_complete', 'completed', f"Synced {len(batch)} events")
        logger.info("Analytics sync success. Cleared local analytics.")
        if is_manual:
            await self.status.update(f"Analytics synced successfully! ({len(batch)} events)")
        return SyncResult(SyncOutcome.SUCCESS, sent=len(batch), remaining=self.analytics.count())

    # ==================== Status ====================

    def last_sync(self) -> Optional[int]:
        value = self.store.get(STORAGE_KEY_LAST_SYNC)
        return value if isinstance(value, (int, float)) else None

    def get_sync_status(self) -> Dict:
        return {
            "is_syncing": self.is_syncing,
            "pending_count": self.queue.count(),
            "analytics_count": self.analytics.count(),
            "last_sync": self.last_sync(),
            "last_analytics_sync": self.analytics.last_sync(),
            "quarantined": len(self.queue.quarantined()),
            "last_sync_logs": self.store.get_recent_logs(5),
        }
