"""
fetcher.py - Network access for the resource cache

Resolves kiosk paths against the app origin and returns CachedResponse
objects. A network failure raises FetchError; an HTTP error status is a
normal response the caller inspects.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urljoin, urlsplit

import aiohttp

from .storage import CachedResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ResourceFetcher")

# Request cache modes -> upstream cache directives
CACHE_MODE_HEADERS = {
    "reload": {"Cache-Control": "no-cache", "Pragma": "no-cache"},
    "no-cache": {"Cache-Control": "no-cache"},
    "force-cache": {"Cache-Control": "max-stale"},
}

_DROPPED_HEADERS = {"content-encoding", "transfer-encoding", "connection", "content-length", "keep-alive"}


class FetchError(Exception):
    """No response could be obtained from the network."""


class ResourceFetcher:
    def __init__(self, origin: str, session: Optional[aiohttp.ClientSession] = None, timeout_s: float = 30.0):
        self.origin = origin.rstrip('/')
        self.session = session
        self.timeout_s = timeout_s

    def resolve(self, url: str) -> str:
        return urljoin(self.origin + '/', url)

    def is_cross_origin(self, url: str) -> bool:
        return urlsplit(self.resolve(url)).netloc != urlsplit(self.origin).netloc

    async def fetch(self, url: str, method: str = "GET", cache_mode: Optional[str] = None,
                    no_cors: bool = False, headers: Optional[dict] = None, body: bytes = None) -> CachedResponse:
        """
        Fetch `url`. With `no_cors`, a cross-origin answer is marked opaque
        and may be stored whatever its status.
        """
        target = self.resolve(url)
        request_headers = dict(headers or {})
        request_headers.update(CACHE_MODE_HEADERS.get(cache_mode, {}))

        if self.session is not None:
            return await self._fetch(self.session, target, method, request_headers, body, no_cors)
        async with aiohttp.ClientSession() as session:
            return await self._fetch(session, target, method, request_headers, body, no_cors)

    async def _fetch(self, session, target, method, headers, body, no_cors) -> CachedResponse:
        try:
            async with session.request(
                method,
                target,
                headers=headers,
                data=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            ) as response:
                content = await response.read()
                kept = {k: v for k, v in response.headers.items() if k.lower() not in _DROPPED_HEADERS}
                return CachedResponse(
                    status=response.status,
                    body=content,
                    headers=kept,
                    url=str(response.url),
                    opaque=no_cors and self.is_cross_origin(target),
                )
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out fetching {target}") from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Failed to fetch {target}: {e}") from e
