"""
status.py - Transient status messages for the kiosk admin area

Messages are logged, kept as the latest status for the admin page and pushed
to connected pages as SYNC_STATUS. Pages clear them after `clearAfterMs`.
"""

import logging
import time
from typing import Optional

from ..network.clients import ClientRegistry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SyncStatus")

STATUS_CLEAR_MS = 4000
ERROR_CLEAR_MS = 10000


class StatusReporter:
    def __init__(self, clients: Optional[ClientRegistry] = None, clock=time.time):
        self.clients = clients
        self.clock = clock
        self.last: Optional[dict] = None

    async def update(self, message: str, level: str = "info", clear_after_ms: int = STATUS_CLEAR_MS):
        """Publish a status line (e.g. 'Syncing 4 records...')."""
        log = logger.warning if level == "warning" else logger.info
        log(f"Status: {message}")
        await self._publish(message, level, clear_after_ms)

    async def error(self, message: str):
        """Publish a user-facing error. Errors stay visible longer."""
        logger.error(f"User error: {message}")
        await self._publish(message, "error", ERROR_CLEAR_MS)

    async def _publish(self, message: str, level: str, clear_after_ms: int):
        self.last = {
            "type": "SYNC_STATUS",
            "message": message,
            "level": level,
            "clearAfterMs": clear_after_ms,
            "at": self.clock(),
        }
        if self.clients is not None:
            await self.clients.post_all(self.last)

    def current(self) -> Optional[dict]:
        """The latest message, or None once it has expired."""
        if self.last is None:
            return None
        age_ms = (self.clock() - self.last["at"]) * 1000
        if age_ms > self.last["clearAfterMs"]:
            return None
        return self.last
