"""Offline resource cache: versioned generations, request policy, worker lifecycle."""

from .fetcher import FetchError, ResourceFetcher
from .lifecycle import LifecycleError, WorkerState
from .registration import CacheRegistration, MessageType, SYNC_TAG
from .resource_cache import (
    CacheManifest,
    CacheRequest,
    InstallReport,
    ResourceCacheManager,
    generation_names,
)
from .storage import CacheStorage, CachedResponse, request_key
from .throttle import RevalidationThrottle

__all__ = [
    "CacheManifest",
    "CacheRegistration",
    "CacheRequest",
    "CacheStorage",
    "CachedResponse",
    "FetchError",
    "InstallReport",
    "LifecycleError",
    "MessageType",
    "ResourceCacheManager",
    "ResourceFetcher",
    "RevalidationThrottle",
    "SYNC_TAG",
    "WorkerState",
    "generation_names",
    "request_key",
]
