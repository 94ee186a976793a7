"""
context.py - Explicit service wiring for the two kiosk contexts

The foreground context (local write endpoints) and the background context
(resource cache, scheduler, sync) are built once at startup. Each opens its
own LocalStore on the same SQLite file; they share no in-memory queue state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from .cache import (
    CacheManifest,
    CacheRegistration,
    CacheStorage,
    ResourceCacheManager,
    ResourceFetcher,
    RevalidationThrottle,
    SYNC_TAG,
)
from .config import KioskSettings
from .network.clients import ClientRegistry
from .services.analytics import AnalyticsBatcher
from .services.api_client import KioskApiClient
from .services.local_store import AppStateStore, LocalStore
from .services.network_handler import RequestSender
from .services.offline_mode import ConnectivityMonitor
from .services.scheduler import BackgroundScheduler
from .services.status import StatusReporter
from .services.submission_queue import SubmissionQueue
from .services.sync_manager import SyncManager

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("KioskContext")


@dataclass
class KioskContext:
    """Foreground services: synchronous writes to the durable store."""
    settings: KioskSettings
    store: LocalStore
    queue: SubmissionQueue
    analytics: AnalyticsBatcher
    app_state: AppStateStore


@dataclass
class BackgroundContext(KioskContext):
    clients: ClientRegistry = None
    status: StatusReporter = None
    connectivity: ConnectivityMonitor = None
    sender: RequestSender = None
    sync: SyncManager = None
    scheduler: BackgroundScheduler = None
    cache_storage: CacheStorage = None
    fetcher: ResourceFetcher = None
    throttle: RevalidationThrottle = None
    registration: CacheRegistration = None
    api_client: Optional[KioskApiClient] = None
    http: Optional[aiohttp.ClientSession] = None
    _scheduler_task: Optional[asyncio.Task] = field(default=None, repr=False)

    # ==================== Lifecycle ====================

    async def start(self, run_scheduler: bool = True):
        """Open the HTTP session, install the cache, schedule the periodic jobs."""
        self._open_session()
        await self.registration.register(initial_manifest(self.settings))
        self._schedule_jobs()
        if run_scheduler:
            self._scheduler_task = asyncio.get_running_loop().create_task(self.scheduler.run_forever())
        logger.info(f"Background context started for {self.settings.kiosk_id}")

    async def stop(self):
        await self.scheduler.stop()
        if self._scheduler_task is not None:
            await self._scheduler_task
            self._scheduler_task = None
        if self.registration.active is not None:
            await self.registration.active.drain()
        if self.http is not None:
            await self.http.close()
            self.http = None
        if self.api_client is not None:
            self.api_client.close()
        logger.info("Background context stopped")

    def _open_session(self):
        needs_session = [
            obj for obj in (self.sender, self.fetcher)
            if isinstance(obj, (RequestSender, ResourceFetcher)) and obj.session is None
        ]
        if not needs_session:
            return
        self.http = aiohttp.ClientSession()
        for obj in needs_session:
            obj.session = self.http

    # ==================== Jobs ====================

    def _schedule_jobs(self):
        s = self.settings
        self.scheduler.add_job("connectivity-probe", s.connectivity_check_interval_ms,
                               self.connectivity.check, run_when_paused=True, run_immediately=True)
        self.scheduler.add_job("sync", s.sync_interval_ms, self.run_sync_job)
        self.scheduler.add_job("update-check", s.update_check_interval_ms, self.registration.check_for_update)
        # Started here if a worker is already active, else on activation
        if self.registration.active is not None:
            self._start_throttle_cleanup()

    def _start_throttle_cleanup(self, worker=None):
        if "throttle-cleanup" in self.scheduler.jobs:
            return
        self.scheduler.add_job("throttle-cleanup", self.settings.throttle_cleanup_interval_ms,
                               self.run_throttle_cleanup)

    async def run_sync_job(self):
        await self.registration.handle_sync_event(SYNC_TAG)
        return await self.sync.auto_sync()

    async def run_throttle_cleanup(self):
        return self.registration.purge_throttle()

    def get_status(self) -> dict:
        return {
            "kioskId": self.settings.kiosk_id,
            "sync": self.sync.get_sync_status(),
            "queue": self.queue.status(),
            "connectivity": self.connectivity.get_status(),
            "scheduler": self.scheduler.get_status(),
            "cache": self.registration.get_status(),
            "storage": self.store.usage(),
            "clients": len(self.clients),
            "statusMessage": self.status.current(),
        }


def initial_manifest(settings: KioskSettings) -> CacheManifest:
    return CacheManifest(
        version=settings.cache_version,
        media_version=settings.media_cache_version,
        critical=list(settings.critical_resources),
        media=list(settings.media_resources),
    )


def _store_services(settings: KioskSettings):
    store = LocalStore(settings.store_path, capacity_bytes=settings.store_capacity_bytes)
    queue = SubmissionQueue(store, max_size=settings.max_queue_size,
                            warning_threshold=settings.queue_warning_threshold)
    analytics = AnalyticsBatcher(store, settings.kiosk_id, max_size=settings.max_analytics_size,
                                 sync_interval_ms=settings.analytics_sync_interval_ms)
    return store, queue, analytics, AppStateStore(store)


def build_foreground_context(settings: KioskSettings) -> KioskContext:
    store, queue, analytics, app_state = _store_services(settings)
    return KioskContext(settings=settings, store=store, queue=queue, analytics=analytics, app_state=app_state)


def build_background_context(
    settings: KioskSettings,
    sender: Optional[RequestSender] = None,
    fetcher: Optional[ResourceFetcher] = None,
    probe=None,
    clients: Optional[ClientRegistry] = None,
) -> BackgroundContext:
    """
    Wire the background services.

    `sender`, `fetcher` and `probe` default to the real network
    implementations; pass fakes to run without an upstream.
    """
    store, queue, analytics, app_state = _store_services(settings)
    clients = clients if clients is not None else ClientRegistry()
    status = StatusReporter(clients)

    api_client = None
    if probe is None:
        api_client = KioskApiClient(settings.probe_url, settings.kiosk_id, timeout=5)
        probe = api_client.check_connection
    connectivity = ConnectivityMonitor(max_failures_before_offline=settings.offline_after_failures, probe=probe)

    sender = sender or RequestSender(
        max_retries=settings.max_retries,
        retry_delay_ms=settings.retry_delay_ms,
        timeout_s=settings.request_timeout_s,
        headers={"X-Kiosk-ID": settings.kiosk_id},
    )
    sync = SyncManager(
        kiosk_id=settings.kiosk_id,
        sync_url=settings.sync_url,
        analytics_url=settings.analytics_url,
        store=store,
        queue=queue,
        analytics=analytics,
        connectivity=connectivity,
        sender=sender,
        status=status,
        max_ambiguous_cycles=settings.max_ambiguous_cycles,
    )

    scheduler = BackgroundScheduler()
    cache_storage = CacheStorage(settings.cache_path)
    fetcher = fetcher or ResourceFetcher(settings.server_url, timeout_s=settings.request_timeout_s)
    throttle = RevalidationThrottle(window_ms=settings.throttle_ms, retention_ms=settings.throttle_retention_ms)

    def make_worker(manifest: CacheManifest) -> ResourceCacheManager:
        return ResourceCacheManager(
            manifest,
            cache_storage,
            fetcher,
            throttle,
            is_online=connectivity.is_online,
            is_paused=lambda: scheduler.is_paused,
            cache_prefix=settings.cache_prefix,
            app_shell=settings.app_shell,
            api_prefix=settings.api_prefix,
            media_prefix=settings.media_prefix,
        )

    registration = CacheRegistration(
        make_worker,
        clients,
        fetcher,
        manifest_path=settings.manifest_path,
        skip_waiting=settings.skip_waiting,
        is_paused=lambda: scheduler.is_paused,
    )

    ctx = BackgroundContext(
        settings=settings,
        store=store,
        queue=queue,
        analytics=analytics,
        app_state=app_state,
        clients=clients,
        status=status,
        connectivity=connectivity,
        sender=sender,
        sync=sync,
        scheduler=scheduler,
        cache_storage=cache_storage,
        fetcher=fetcher,
        throttle=throttle,
        registration=registration,
        api_client=api_client,
    )
    registration.on_activate(ctx._start_throttle_cleanup)
    return ctx
