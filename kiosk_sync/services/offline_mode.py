"""
offline_mode.py - Connectivity monitor

Tracks whether the kiosk can reach the upstream server, based on probe
results and on online/offline signals reported by the kiosk page. The
sync engine treats "not online" as a deferral, never as a failure.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("OfflineMode")


class NetworkMode(Enum):
    """Kiosk connectivity modes."""
    ONLINE = "online"      # Upstream reachable
    OFFLINE = "offline"    # Serving from cache, queueing locally
    UNKNOWN = "unknown"    # No signal yet


class ConnectivityMonitor:
    """
    Controls the kiosk's online/offline state.

    A single failed probe is not enough to go offline; `max_failures_before_offline`
    consecutive failures are. An explicit offline signal from the page is
    trusted immediately.
    """

    def __init__(self, max_failures_before_offline: int = 3, probe: Optional[Callable[[], bool]] = None):
        self.current_mode: NetworkMode = NetworkMode.UNKNOWN
        self.last_probe_success: Optional[datetime] = None
        self.consecutive_failures: int = 0
        self.max_failures_before_offline = max_failures_before_offline
        self.probe = probe

        self._on_mode_change_callbacks: List[Callable] = []
        self._on_reconnect_callbacks: List[Callable] = []

    # ==================== Mode Management ====================

    def get_current_mode(self) -> NetworkMode:
        return self.current_mode

    def is_online(self) -> bool:
        return self.current_mode == NetworkMode.ONLINE

    def is_offline(self) -> bool:
        return self.current_mode == NetworkMode.OFFLINE

    def _set_mode(self, new_mode: NetworkMode, reason: str = ""):
        if new_mode == self.current_mode:
            return

        old_mode = self.current_mode
        self.current_mode = new_mode
        logger.info(f"Mode changed: {old_mode.value} -> {new_mode.value} | Reason: {reason}")

        for callback in self._on_mode_change_callbacks:
            try:
                callback(old_mode, new_mode, reason)
            except Exception as e:
                logger.error(f"Mode change callback error: {e}")

        if new_mode == NetworkMode.ONLINE and old_mode == NetworkMode.OFFLINE:
            for callback in self._on_reconnect_callbacks:
                try:
                    callback()
                except Exception as e:
                    logger.error(f"Reconnect callback error: {e}")

    # ==================== Signals ====================

    def on_probe_success(self):
        self.last_probe_success = datetime.now()
        self.consecutive_failures = 0
        if self.current_mode == NetworkMode.OFFLINE:
            self._set_mode(NetworkMode.ONLINE, "Connection restored")
        else:
            self._set_mode(NetworkMode.ONLINE, "Initial connection established")

    def on_probe_failure(self, error: str = ""):
        self.consecutive_failures += 1
        logger.warning(
            f"Connectivity probe failed ({self.consecutive_failures}/{self.max_failures_before_offline}): {error}"
        )
        if self.current_mode == NetworkMode.UNKNOWN or \
                self.consecutive_failures >= self.max_failures_before_offline:
            self._set_mode(
                NetworkMode.OFFLINE,
                f"Connection lost after {self.consecutive_failures} failures"
            )

    def on_connection_lost(self):
        """The page reported the browser went offline."""
        logger.warning("Offline signal received - entering offline mode immediately")
        self.consecutive_failures = self.max_failures_before_offline
        self._set_mode(NetworkMode.OFFLINE, "Offline signal")

    def set_online(self, online: bool):
        if online:
            self.on_probe_success()
        else:
            self.on_connection_lost()

    async def check(self) -> bool:
        """Run the probe off the event loop and feed the result in."""
        if self.probe is None:
            return self.is_online()
        try:
            reachable = await asyncio.to_thread(self.probe)
        except Exception as e:
            reachable = False
            logger.debug(f"Probe raised: {e}")
        if reachable:
            self.on_probe_success()
        else:
            self.on_probe_failure("upstream unreachable")
        return reachable

    # ==================== Callbacks ====================

    def on_mode_change(self, callback: Callable):
        """
        Register a callback for mode changes.

        Callback signature: (old_mode: NetworkMode, new_mode: NetworkMode, reason: str)
        """
        self._on_mode_change_callbacks.append(callback)

    def on_reconnect(self, callback: Callable):
        """Register a callback for OFFLINE -> ONLINE transitions. Signature: ()"""
        self._on_reconnect_callbacks.append(callback)

    def get_status(self) -> dict:
        return {
            "mode": self.current_mode.value,
            "is_online": self.is_online(),
            "last_probe_success": self.last_probe_success.isoformat() if self.last_probe_success else None,
            "consecutive_failures": self.consecutive_failures
        }
