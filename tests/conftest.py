"""Pytest configuration and shared fixtures."""

import pytest

from kiosk_sync.cache import (
    CacheManifest,
    CacheRegistration,
    CacheStorage,
    ResourceCacheManager,
    RevalidationThrottle,
)
from kiosk_sync.config import KioskSettings
from kiosk_sync.network.clients import ClientRegistry
from kiosk_sync.services.analytics import AnalyticsBatcher
from kiosk_sync.services.local_store import LocalStore
from kiosk_sync.services.offline_mode import ConnectivityMonitor
from kiosk_sync.services.status import StatusReporter
from kiosk_sync.services.submission_queue import SubmissionQueue
from kiosk_sync.services.sync_manager import SyncManager

from .fakes import ANALYTICS_URL, SYNC_URL, FakeFetcher, RecordingClient, ScriptedSender


# ==================== Store Fixtures ====================


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(tmp_path / "kiosk_store.db")


@pytest.fixture
def queue(store) -> SubmissionQueue:
    return SubmissionQueue(store, max_size=1000, warning_threshold=800)


@pytest.fixture
def analytics(store) -> AnalyticsBatcher:
    return AnalyticsBatcher(store, "KIOSK-TEST")


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    monitor = ConnectivityMonitor(max_failures_before_offline=3)
    monitor.set_online(True)
    return monitor


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def page(clients) -> RecordingClient:
    client = RecordingClient()
    clients.add("page-1", client.send)
    return client


@pytest.fixture
def sender() -> ScriptedSender:
    return ScriptedSender(max_retries=3, retry_delay_ms=2000)


@pytest.fixture
def sync_manager(store, queue, analytics, connectivity, sender, clients) -> SyncManager:
    return SyncManager(
        kiosk_id="KIOSK-TEST",
        sync_url=SYNC_URL,
        analytics_url=ANALYTICS_URL,
        store=store,
        queue=queue,
        analytics=analytics,
        connectivity=connectivity,
        sender=sender,
        status=StatusReporter(clients),
        max_ambiguous_cycles=5,
    )


# ==================== Cache Fixtures ====================


@pytest.fixture
def cache_storage(tmp_path) -> CacheStorage:
    return CacheStorage(tmp_path / "resource_cache.db")


@pytest.fixture
def fetcher() -> FakeFetcher:
    fake = FakeFetcher()
    fake.route("/", b"<html>root</html>", content_type="text/html")
    fake.route("/index.html", b"<html>shell</html>", content_type="text/html")
    fake.route("/main/index.js", b"console.log('v1')", content_type="application/javascript")
    fake.route("/custom.css", b"body{}", content_type="text/css")
    fake.route("/asset/video/1.mp4", b"\x00\x00video", content_type="video/mp4")
    return fake


@pytest.fixture
def manifest() -> CacheManifest:
    return CacheManifest(
        version=12,
        media_version=1,
        critical=["/", "/index.html", "/main/index.js", "/custom.css"],
        media=["/asset/video/1.mp4"],
    )


@pytest.fixture
def throttle() -> RevalidationThrottle:
    return RevalidationThrottle(window_ms=300000, retention_ms=3600000)


@pytest.fixture
def make_worker(cache_storage, fetcher, throttle, connectivity):
    state = {"paused": False}

    def factory(manifest: CacheManifest) -> ResourceCacheManager:
        return ResourceCacheManager(
            manifest,
            cache_storage,
            fetcher,
            throttle,
            is_online=connectivity.is_online,
            is_paused=lambda: state["paused"],
        )

    factory.state = state
    return factory


@pytest.fixture
def registration(make_worker, clients, fetcher) -> CacheRegistration:
    return CacheRegistration(make_worker, clients, fetcher, skip_waiting=True,
                             is_paused=lambda: make_worker.state["paused"])


@pytest.fixture
def settings(tmp_path) -> KioskSettings:
    return KioskSettings(
        kiosk_id="KIOSK-TEST",
        server_url="http://upstream.test",
        data_dir=str(tmp_path),
        retry_delay_ms=10,
        critical_resources=["/", "/index.html", "/main/index.js"],
        media_resources=["/asset/video/1.mp4"],
    )
