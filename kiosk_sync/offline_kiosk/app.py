"""
Offline Kiosk App - Local server in front of the kiosk browser

The kiosk page is loaded from this server, so every request it makes can be
answered from the resource cache when the upstream is unreachable. It also
exposes the local write endpoints (submissions, analytics, app state) and a
small admin status page.

Serve on port 8001 (the bridge listens on 8002)
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, Response
from fastapi.templating import Jinja2Templates

from .. import __version__
from ..cache import CacheRequest
from ..context import BackgroundContext, KioskContext
from ..services.errors import StorageError, StorageExhaustedError, ValidationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("OfflineKiosk")

BASE_DIR = Path(__file__).parent
TEMPLATES_DIR = BASE_DIR / "templates"

STORAGE_FULL_MESSAGE = "Storage limit reached. Please sync data or contact support."

# Response headers recomputed by the server
_HOP_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def _is_navigation(request: Request) -> bool:
    mode = request.headers.get("sec-fetch-mode")
    if mode:
        return mode == "navigate"
    return request.method == "GET" and "text/html" in request.headers.get("accept", "")


def create_app(background: BackgroundContext, foreground: Optional[KioskContext] = None) -> FastAPI:
    """
    Build the kiosk server.

    Local writes go through `foreground`; cache, sync and scheduler
    control go through `background`.
    """
    foreground = foreground or background
    app = FastAPI(title="Kiosk Survey Edge", version=__version__)

    async def _storage_failure(e: StorageError):
        if isinstance(e, StorageExhaustedError):
            await background.status.error(STORAGE_FULL_MESSAGE)
            raise HTTPException(status_code=507, detail=STORAGE_FULL_MESSAGE)
        raise HTTPException(status_code=500, detail=str(e))

    # ==================== Health / Status ====================

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/local/status")
    async def local_status():
        return background.get_status()

    @app.get("/local/admin", response_class=HTMLResponse)
    async def admin(request: Request):
        return templates.TemplateResponse(request, "admin.html", {
            "status": background.get_status(),
            "quarantine": background.queue.quarantined(),
            "logs": background.store.get_recent_logs(20),
        })

    # ==================== Foreground Writes ====================

    @app.post("/local/submissions", status_code=201)
    async def submit(data: dict):
        payload = dict(data)
        record_id = payload.pop("id", None)
        if record_id is not None and not isinstance(record_id, str):
            raise HTTPException(status_code=422, detail="id must be a string")
        try:
            record = foreground.queue.enqueue(payload, record_id=record_id)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except StorageError as e:
            await _storage_failure(e)
        return {"id": record.id, "createdAt": record.created_at, "queued": foreground.queue.count()}

    @app.post("/local/analytics", status_code=201)
    async def track(data: dict):
        fields = dict(data)
        event_type = fields.pop("eventType", None)
        if not isinstance(event_type, str) or not event_type:
            raise HTTPException(status_code=422, detail="eventType is required")
        session_id = fields.pop("sessionId", None)
        fields.pop("kioskId", None)
        fields.pop("timestamp", None)
        try:
            event = foreground.analytics.record(event_type, session_id=session_id, **fields)
        except StorageError as e:
            await _storage_failure(e)
        return {"event": event.to_dict(), "queued": foreground.analytics.count()}

    @app.get("/local/state")
    async def get_state():
        return foreground.app_state.load()

    @app.put("/local/state")
    async def put_state(data: dict):
        try:
            foreground.app_state.save(data)
        except StorageError as e:
            await _storage_failure(e)
        return {"status": "saved"}

    @app.delete("/local/state")
    async def delete_state():
        foreground.app_state.clear()
        return {"status": "cleared"}

    # ==================== Background Control ====================

    @app.post("/local/visibility")
    async def visibility(data: dict):
        hidden = data.get("hidden")
        if not isinstance(hidden, bool):
            raise HTTPException(status_code=422, detail="hidden must be a boolean")
        background.scheduler.set_visibility(hidden)
        return {"paused": background.scheduler.is_paused}

    @app.post("/local/sync")
    async def sync_now():
        results = await background.sync.sync_all(is_manual=True)
        return {name: result.to_dict() for name, result in results.items()}

    @app.get("/local/quarantine")
    async def quarantine():
        entries = background.queue.quarantined()
        return {"count": len(entries), "entries": entries}

    @app.post("/local/quarantine/restore")
    async def restore_quarantine():
        try:
            restored = background.queue.restore_quarantined()
        except StorageError as e:
            await _storage_failure(e)
        return {"restored": restored, "queued": background.queue.count()}

    @app.delete("/local/queue")
    async def clear_queue():
        cleared = foreground.queue.count()
        foreground.queue.clear()
        logger.warning(f"Submission queue cleared by operator ({cleared} records)")
        return {"cleared": cleared}

    # ==================== Cached Resources ====================

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"])
    async def cached_resource(request: Request, path: str):
        url = "/" + path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        method = "GET" if request.method == "HEAD" else request.method
        forwarded = {}
        if request.headers.get("content-type"):
            forwarded["Content-Type"] = request.headers["content-type"]

        cache_request = CacheRequest(
            url=url,
            method=method,
            mode="navigate" if _is_navigation(request) else "cors",
            headers=forwarded,
            body=await request.body() if method != "GET" else b"",
        )
        cached = await background.registration.handle_request(cache_request)
        headers = {k: v for k, v in cached.headers.items()
                   if k.lower() not in _HOP_HEADERS and k.lower() != "content-type"}
        return Response(
            content=cached.body if request.method != "HEAD" else b"",
            status_code=cached.status,
            headers=headers,
            media_type=cached.content_type,
        )

    return app
