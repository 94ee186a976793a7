"""Test doubles for the network edges: sync sender, resource fetcher, page clients."""

from typing import Any, Dict, List, Optional

from kiosk_sync.cache import CachedResponse, FetchError, ResourceFetcher
from kiosk_sync.services.errors import ServerRejectionError, TransportError
from kiosk_sync.services.network_handler import RequestSender

SYNC_URL = "http://upstream.test/api/submit-survey"
ANALYTICS_URL = "http://upstream.test/api/sync-analytics"


class ScriptedSender(RequestSender):
    """
    RequestSender whose network leg replays a script.

    Each script item is a response body (returned) or an exception
    (raised). Retry and backoff logic is the real one; sleeps are recorded.
    """

    def __init__(self, script: Optional[List[Any]] = None, **kwargs):
        self.sleeps: List[float] = []

        async def fake_sleep(seconds):
            self.sleeps.append(seconds)

        kwargs.setdefault("retry_delay_ms", 2000)
        super().__init__(sleep=fake_sleep, **kwargs)
        self.script = list(script or [])
        self.calls: List[Dict] = []
        self.on_post = None

    async def _post_once(self, url, payload):
        self.calls.append({"url": url, "payload": payload})
        if self.on_post is not None:
            self.on_post(url, payload)
        if not self.script:
            raise TransportError("script exhausted")
        item = self.script.pop(0)
        if callable(item):
            item = item(url, payload)
        if isinstance(item, Exception):
            raise item
        return item


class FakeFetcher(ResourceFetcher):
    """ResourceFetcher answering from a routing table instead of the network."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        super().__init__("http://kiosk.test")
        self.routes = dict(routes or {})
        self.calls: List[Dict] = []

    def route(self, url: str, body: bytes = b"", status: int = 200, content_type: str = "text/plain"):
        self.routes[url] = CachedResponse(status=status, body=body, headers={"Content-Type": content_type}, url=url)

    async def fetch(self, url, method="GET", cache_mode=None, no_cors=False, headers=None, body=None):
        self.calls.append({"url": url, "method": method, "cache_mode": cache_mode, "no_cors": no_cors})
        result = self.routes.get(url)
        if result is None:
            raise FetchError(f"Failed to fetch {url}: no route")
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result()
        return CachedResponse(status=result.status, body=result.body, headers=dict(result.headers),
                              url=result.url, opaque=result.opaque)

    def urls(self) -> List[str]:
        return [call["url"] for call in self.calls]


class RecordingClient:
    def __init__(self):
        self.messages: List[dict] = []

    async def send(self, message: dict):
        self.messages.append(message)

    def types(self) -> List[str]:
        return [m.get("type") for m in self.messages]


def server_rejection(status=500):
    return ServerRejectionError(f"Server returned status: {status}", status=status)


