"""
registration.py - Active/waiting cache workers and their control messages

CacheRegistration owns the worker that currently serves requests and at most
one installed update waiting to take over. Control messages from the kiosk
page are dispatched through a table keyed by message type.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from ..network.clients import ClientRegistry
from .fetcher import FetchError, ResourceFetcher
from .resource_cache import CacheManifest, CacheRequest, InstallReport, ResourceCacheManager
from .storage import CachedResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("CacheRegistration")

SYNC_TAG = "sync-surveys"


class MessageType(str, Enum):
    SKIP_WAITING = "SKIP_WAITING"
    CLEAR_CACHE = "CLEAR_CACHE"
    CACHE_CLEARED = "CACHE_CLEARED"
    RECACHE_VIDEO = "RECACHE_VIDEO"
    VIDEO_RECACHED = "VIDEO_RECACHED"
    BACKGROUND_SYNC = "BACKGROUND_SYNC"
    UPDATE_AVAILABLE = "UPDATE_AVAILABLE"
    CONTROLLER_CHANGED = "CONTROLLER_CHANGED"


WorkerFactory = Callable[[CacheManifest], ResourceCacheManager]
Handler = Callable[[dict], Awaitable[Optional[dict]]]


class CacheRegistration:
    def __init__(
        self,
        worker_factory: WorkerFactory,
        clients: ClientRegistry,
        fetcher: ResourceFetcher,
        manifest_path: str = "/cache-manifest.json",
        skip_waiting: bool = True,
        is_paused: Callable[[], bool] = lambda: False,
    ):
        self.worker_factory = worker_factory
        self.clients = clients
        self.fetcher = fetcher
        self.manifest_path = manifest_path
        self.skip_waiting = skip_waiting
        self.is_paused = is_paused

        self.active: Optional[ResourceCacheManager] = None
        self.waiting: Optional[ResourceCacheManager] = None
        self.installing: Optional[ResourceCacheManager] = None
        self.last_install: Optional[InstallReport] = None

        self._lock = asyncio.Lock()
        self._activate_callbacks: List[Callable[[ResourceCacheManager], None]] = []
        self._handlers: Dict[str, Handler] = {
            MessageType.SKIP_WAITING.value: self._on_skip_waiting,
            MessageType.CLEAR_CACHE.value: self._on_clear_cache,
            MessageType.RECACHE_VIDEO.value: self._on_recache_video,
        }

    def on_activate(self, callback: Callable[[ResourceCacheManager], None]):
        """Register a callback run after a worker becomes active."""
        self._activate_callbacks.append(callback)

    # ==================== Install / Activate ====================

    async def register(self, manifest: CacheManifest) -> ResourceCacheManager:
        """Install a worker for `manifest` and activate it (or leave it waiting)."""
        async with self._lock:
            worker = self.worker_factory(manifest)
            self.installing = worker
            try:
                self.last_install = await worker.install()
            except Exception as e:
                worker.retire()
                logger.error(f"Install of {worker.label} failed: {e}")
                raise
            finally:
                self.installing = None

            if self.waiting is not None:
                self.waiting.retire()
            self.waiting = worker

        if self.skip_waiting or self.active is None:
            await self.activate_waiting()
        else:
            logger.info(f"{worker.label} installed and waiting")
            await self.clients.post_all({
                "type": MessageType.UPDATE_AVAILABLE.value,
                "version": manifest.version,
            })
        return worker

    async def activate_waiting(self) -> bool:
        async with self._lock:
            worker = self.waiting
            if worker is None:
                return False
            self.waiting = None

            previous = self.active
            if previous is not None:
                cancelled = await previous.cancel_revalidations()
                if cancelled:
                    logger.info(f"Cancelled {cancelled} revalidations of {previous.label}")
            deleted = await worker.activate_caches()
            self.active = worker
            if previous is not None:
                previous.retire()

            claimed = self.clients.claim(worker.label)
            logger.info(f"{worker.label} activated; purged {len(deleted)} old caches, "
                        f"claimed {claimed} clients")

        for callback in self._activate_callbacks:
            callback(worker)
        await self.clients.post_all({
            "type": MessageType.CONTROLLER_CHANGED.value,
            "version": worker.manifest.version,
        })
        return True

    # ==================== Update Check ====================

    async def check_for_update(self) -> bool:
        """Fetch the manifest and install it when its version differs. Returns True if installed."""
        if self.is_paused():
            logger.debug("Update check skipped (paused)")
            return False
        if self.waiting is not None or self.installing is not None:
            logger.debug("Update check skipped (update already pending)")
            return False

        try:
            response = await self.fetcher.fetch(self.manifest_path, cache_mode="reload")
        except FetchError as e:
            logger.warning(f"Update check failed: {e}")
            return False
        if not response.ok:
            logger.warning(f"Update check failed: HTTP {response.status}")
            return False
        try:
            manifest = CacheManifest.from_dict(response.json_body())
        except (ValueError, TypeError) as e:
            logger.warning(f"Update check got an invalid manifest: {e}")
            return False

        current = self.active.manifest if self.active is not None else None
        if current is not None and (current.version, current.media_version) == (
                manifest.version, manifest.media_version):
            logger.info(f"No update (version {manifest.version})")
            return False

        logger.info(f"Update found: version {manifest.version}")
        await self.register(manifest)
        return True

    # ==================== Requests ====================

    async def handle_request(self, request: CacheRequest) -> CachedResponse:
        if self.active is None:
            try:
                return await self.fetcher.fetch(request.url, method=request.method,
                                                headers=request.headers, body=request.body)
            except FetchError:
                return CachedResponse.text(503, "Offline")
        return await self.active.handle_request(request)

    # ==================== Messages ====================

    async def handle_message(self, message: dict) -> Optional[dict]:
        """Dispatch a control message. Unknown types are logged and ignored."""
        msg_type = message.get("type") if isinstance(message, dict) else None
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning(f"Unknown message type: {msg_type}")
            return None
        return await handler(message)

    def handles(self, msg_type: str) -> bool:
        return msg_type in self._handlers

    async def _on_skip_waiting(self, message: dict) -> Optional[dict]:
        activated = await self.activate_waiting()
        if not activated:
            logger.info("SKIP_WAITING received with no waiting update")
        return None

    async def _on_clear_cache(self, message: dict) -> dict:
        deleted = []
        if self.active is not None:
            deleted = await self.active.clear_all()
        reply = {"type": MessageType.CACHE_CLEARED.value, "deleted": deleted}
        await self.clients.post_all(reply)
        return reply

    async def _on_recache_video(self, message: dict) -> dict:
        results = await self.active.recache_media() if self.active is not None else {}
        reply = {"type": MessageType.VIDEO_RECACHED.value, "results": results}
        await self.clients.post_all(reply)
        return reply

    async def handle_sync_event(self, tag: str) -> bool:
        """Platform sync event. Pages are told to flush their queue."""
        if tag != SYNC_TAG:
            logger.debug(f"Ignoring sync event: {tag}")
            return False
        logger.info("Background sync triggered")
        await self.clients.post_all({"type": MessageType.BACKGROUND_SYNC.value})
        return True

    def purge_throttle(self) -> int:
        return self.active.purge_throttle() if self.active is not None else 0

    def get_status(self) -> Dict:
        return {
            "active": self.active.get_status() if self.active else None,
            "waiting": self.waiting.label if self.waiting else None,
            "installing": self.installing.label if self.installing else None,
            "generations": self.active.storage.keys() if self.active else [],
            "lastInstall": self.last_install.to_dict() if self.last_install else None,
        }
