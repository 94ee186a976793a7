"""
throttle.py - Per-resource revalidation throttle

In-memory map of resource key -> last background revalidation time. Keeps a
burst of requests for the same asset from turning into a burst of fetches.
"""

import logging
import time
from typing import Dict

logger = logging.getLogger("RevalidationThrottle")


class RevalidationThrottle:
    def __init__(self, window_ms: int = 300000, retention_ms: int = 3600000, clock=time.time):
        self.window_ms = window_ms
        self.retention_ms = retention_ms
        self.clock = clock
        self._last: Dict[str, float] = {}

    def should_revalidate(self, key: str) -> bool:
        last = self._last.get(key)
        if last is None:
            return True
        return (self.clock() - last) * 1000 >= self.window_ms

    def mark(self, key: str):
        self._last[key] = self.clock()

    def try_acquire(self, key: str) -> bool:
        """Check and mark in one step."""
        if not self.should_revalidate(key):
            return False
        self.mark(key)
        return True

    def purge(self) -> int:
        """Drop entries older than the retention window."""
        now = self.clock()
        stale = [k for k, t in self._last.items() if (now - t) * 1000 > self.retention_ms]
        for key in stale:
            del self._last[key]
        if stale:
            logger.info(f"Cleaned {len(stale)} old entries from throttle map")
        return len(stale)

    def clear(self):
        self._last.clear()

    def __len__(self):
        return len(self._last)

    def __contains__(self, key):
        return key in self._last
