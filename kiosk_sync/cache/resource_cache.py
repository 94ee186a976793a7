"""
resource_cache.py - Offline resource cache worker

One ResourceCacheManager is one cache version: it installs the manifest's
critical resources into its static generation, purges older generations on
activation and answers requests from the kiosk page according to a per-route
policy. Background revalidation keeps cached assets fresh without delaying
the response.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .fetcher import FetchError, ResourceFetcher
from .lifecycle import Lifecycle, WorkerState
from .storage import CacheStorage, CachedResponse, Generation, request_key
from .throttle import RevalidationThrottle

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ResourceCache")


@dataclass(frozen=True)
class GenerationNames:
    static: str
    runtime: str
    media: str

    def all(self) -> List[str]:
        return [self.static, self.runtime, self.media]


def generation_names(prefix: str, version: int, media_version: int) -> GenerationNames:
    return GenerationNames(
        static=f"{prefix}-survey-v{version}",
        runtime=f"{prefix}-runtime-v{version}",
        media=f"{prefix}-media-v{media_version}",
    )


@dataclass
class CacheManifest:
    version: int
    media_version: int
    critical: List[str] = field(default_factory=list)
    media: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "CacheManifest":
        if not isinstance(data, dict) or "version" not in data:
            raise ValueError("Cache manifest must be an object with a version")
        return cls(
            version=int(data["version"]),
            media_version=int(data.get("mediaVersion", 1)),
            critical=[str(u) for u in data.get("critical", [])],
            media=[str(u) for u in data.get("media", [])],
        )

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "mediaVersion": self.media_version,
            "critical": list(self.critical),
            "media": list(self.media),
        }


@dataclass
class CacheRequest:
    url: str
    method: str = "GET"
    # "navigate" for top-level page loads, anything else for subresources
    mode: str = "cors"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def key(self) -> str:
        return request_key(self.url)

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"


@dataclass
class InstallReport:
    version: int
    cached: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    media_cached: List[str] = field(default_factory=list)
    media_failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "cached": self.cached,
            "failed": self.failed,
            "mediaCached": self.media_cached,
            "mediaFailed": self.media_failed,
        }


def _offline_json() -> CachedResponse:
    return CachedResponse.json(503, {"error": "Offline - request queued", "offline": True})


class ResourceCacheManager:
    def __init__(
        self,
        manifest: CacheManifest,
        storage: CacheStorage,
        fetcher: ResourceFetcher,
        throttle: RevalidationThrottle,
        is_online: Callable[[], bool] = lambda: True,
        is_paused: Callable[[], bool] = lambda: False,
        cache_prefix: str = "kiosk",
        app_shell: str = "/index.html",
        api_prefix: str = "/api/",
        media_prefix: str = "/asset/video/",
    ):
        self.manifest = manifest
        self.storage = storage
        self.fetcher = fetcher
        self.throttle = throttle
        self.is_online = is_online
        self.is_paused = is_paused
        self.app_shell = app_shell
        self.api_prefix = api_prefix
        self.media_prefix = media_prefix

        self.names = generation_names(cache_prefix, manifest.version, manifest.media_version)
        self.lifecycle = Lifecycle(self.label)
        self._revalidations: Set[asyncio.Task] = set()

    @property
    def label(self) -> str:
        return f"v{self.manifest.version}"

    @property
    def state(self) -> WorkerState:
        return self.lifecycle.state

    # ==================== Install / Activate ====================

    async def install(self) -> InstallReport:
        """
        Cache the critical resources, then the media files.

        Individual failures are recorded in the report; install itself
        always completes.
        """
        logger.info(f"Installing {self.label}: {len(self.manifest.critical)} critical, "
                    f"{len(self.manifest.media)} media")
        report = InstallReport(version=self.manifest.version)

        static = self.storage.open(self.names.static)
        results = await asyncio.gather(
            *(self._fetch_for_install(url) for url in self.manifest.critical),
            return_exceptions=True,
        )
        for url, result in zip(self.manifest.critical, results):
            if isinstance(result, BaseException):
                report.failed[url] = str(result) or type(result).__name__
                logger.warning(f"Failed to cache {url}: {report.failed[url]}")
            else:
                static.put(request_key(url), result)
                report.cached.append(url)

        media_cached, media_failed = await self._cache_media(self.manifest.media, cache_mode="force-cache",
                                                             skip_present=True)
        report.media_cached = media_cached
        report.media_failed = media_failed

        self.lifecycle.transition(WorkerState.INSTALLED)
        logger.info(f"Install complete for {self.label}: {len(report.cached)} cached, "
                    f"{len(report.failed)} failed")
        return report

    async def _fetch_for_install(self, url: str) -> CachedResponse:
        response = await self.fetcher.fetch(url)
        if not response.ok:
            raise FetchError(f"HTTP {response.status}")
        return response

    async def _cache_media(self, urls: List[str], cache_mode: str, skip_present: bool = False):
        """Best-effort media caching. Opaque answers are accepted."""
        media = self.storage.open(self.names.media)
        cached, failed = [], {}
        for url in urls:
            key = request_key(url)
            if skip_present and media.match(key) is not None:
                cached.append(url)
                continue
            try:
                response = await self.fetcher.fetch(url, cache_mode=cache_mode, no_cors=True)
            except FetchError as e:
                failed[url] = str(e)
                logger.warning(f"Failed to cache video {url}: {e}")
                continue
            if response.ok or response.opaque:
                media.put(key, response)
                cached.append(url)
                logger.info(f"Cached video: {url}")
            else:
                failed[url] = f"HTTP {response.status}"
                logger.warning(f"Failed to cache video {url}: HTTP {response.status}")
        return cached, failed

    async def activate_caches(self) -> List[str]:
        """Purge every generation that is not one of ours."""
        self.lifecycle.transition(WorkerState.ACTIVATING)
        deleted = self.storage.delete_except(self.names.all())
        self.lifecycle.transition(WorkerState.ACTIVATED)
        return deleted

    def retire(self):
        if self.state != WorkerState.REDUNDANT:
            self.lifecycle.transition(WorkerState.REDUNDANT)

    # ==================== Request Routing ====================

    async def handle_request(self, request: CacheRequest) -> CachedResponse:
        path = request.key

        if request.method.upper() != "GET":
            return await self._passthrough(request)
        if request.is_navigation:
            return await self._handle_navigation(request)
        if path.startswith(self.api_prefix):
            return await self._handle_api(request)
        if path.startswith(self.media_prefix):
            return await self._handle_media(request)
        return await self._handle_get(request)

    async def _passthrough(self, request: CacheRequest) -> CachedResponse:
        if request.key.startswith(self.api_prefix):
            return await self._handle_api(request)
        try:
            return await self.fetcher.fetch(request.url, method=request.method,
                                            headers=request.headers, body=request.body)
        except FetchError as e:
            logger.debug(f"Passthrough failed for {request.method} {request.key}: {e}")
            return CachedResponse.text(503, "Offline")

    async def _handle_navigation(self, request: CacheRequest) -> CachedResponse:
        shell = self.storage.match(request_key(self.app_shell), [self.names.static])
        if shell is not None:
            return shell
        try:
            return await self.fetcher.fetch(request.url)
        except FetchError:
            logger.warning("App shell not cached and network unavailable")
            return CachedResponse.text(503, "Offline")

    async def _handle_api(self, request: CacheRequest) -> CachedResponse:
        try:
            response = await self.fetcher.fetch(request.url, method=request.method,
                                                headers=request.headers, body=request.body)
        except FetchError as e:
            logger.info(f"API request failed, offline: {request.key} ({e})")
            return _offline_json()
        if not response.ok:
            logger.warning(f"API returned {response.status} for {request.key}")
            return CachedResponse.json(response.status, {
                "error": "Server error",
                "status": response.status,
                "offline": False,
            })
        return response

    async def _handle_media(self, request: CacheRequest) -> CachedResponse:
        key = request.key
        media = self.storage.open(self.names.media)
        cached = media.match(key)
        if cached is not None:
            return cached
        try:
            response = await self.fetcher.fetch(request.url, cache_mode="force-cache", no_cors=True)
            if response.ok or response.opaque:
                media.put(key, response)
                return response
        except FetchError as e:
            logger.info(f"Video fetch failed for {key}: {e}")
        fallback = self.storage.match(key, [self.names.runtime])
        if fallback is not None:
            return fallback
        return CachedResponse.text(503, "Video unavailable offline")

    async def _handle_get(self, request: CacheRequest) -> CachedResponse:
        key = request.key
        cached = self.storage.match(key, self.names.all())
        if cached is not None:
            self.schedule_revalidation(request)
            return cached
        try:
            response = await self.fetcher.fetch(request.url)
        except FetchError as e:
            logger.info(f"Fetch failed for {key}: {e}")
            return CachedResponse.text(503, "Offline")
        if response.ok:
            self.storage.open(self.names.runtime).put(key, response)
        return response

    # ==================== Background Revalidation ====================

    def schedule_revalidation(self, request: CacheRequest) -> Optional[asyncio.Task]:
        """Start a revalidation unless offline, paused or throttled."""
        if not self.is_online() or self.is_paused():
            return None
        if not self.throttle.try_acquire(request.key):
            return None
        task = asyncio.get_running_loop().create_task(self.revalidate(request))
        self._revalidations.add(task)
        task.add_done_callback(self._revalidations.discard)
        return task

    async def revalidate(self, request: CacheRequest) -> bool:
        key = request.key
        try:
            response = await self.fetcher.fetch(request.url)
        except FetchError as e:
            logger.debug(f"Background update failed for {key}: {e}")
            return False
        if not response.ok:
            logger.debug(f"Background update skipped for {key}: HTTP {response.status}")
            return False
        if self.state != WorkerState.ACTIVATED:
            logger.debug(f"Background update dropped for {key}: {self.label} is {self.state.value}")
            return False
        target = self.names.static if Generation(self.storage, self.names.static).match(key) else self.names.runtime
        self.storage.open(target).put(key, response)
        logger.debug(f"Background updated: {key}")
        return True

    async def drain(self):
        """Wait for in-flight revalidations."""
        if self._revalidations:
            await asyncio.gather(*list(self._revalidations), return_exceptions=True)

    async def cancel_revalidations(self) -> int:
        """Cancel in-flight revalidations and wait for them to unwind."""
        pending = [task for task in self._revalidations if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    def purge_throttle(self) -> int:
        return self.throttle.purge()

    # ==================== Maintenance ====================

    async def clear_all(self) -> List[str]:
        """Delete every generation and forget throttle history."""
        deleted = self.storage.delete_except([])
        self.throttle.clear()
        logger.info(f"Cleared {len(deleted)} caches")
        return deleted

    async def recache_media(self) -> Dict[str, bool]:
        """Drop and re-download each media file, bypassing HTTP caches."""
        media = self.storage.open(self.names.media)
        for url in self.manifest.media:
            media.delete(request_key(url))
        cached, _ = await self._cache_media(self.manifest.media, cache_mode="reload")
        results = {url: url in cached for url in self.manifest.media}
        logger.info(f"Recached media: {sum(results.values())}/{len(results)} succeeded")
        return results

    def get_status(self) -> Dict:
        return {
            "version": self.manifest.version,
            "mediaVersion": self.manifest.media_version,
            "state": self.state.value,
            "generations": self.names.all(),
            "revalidating": len(self._revalidations),
            "throttleEntries": len(self.throttle),
        }
