"""
ws_local.py - Local WebSocket Bridge for the kiosk page

Carries control messages between the kiosk page (foreground) and the
background context: visibility changes, manual sync requests, cache control
messages, and server pushes such as SYNC_STATUS or UPDATE_AVAILABLE.
"""

import asyncio
import json
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional

import websockets

from ..context import BackgroundContext

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("LocalBridge")


class LocalBridge:
    def __init__(self, ctx: BackgroundContext):
        self.ctx = ctx
        self._handlers: Dict[str, Callable[[dict], Awaitable[Optional[dict]]]] = {
            "VISIBILITY": self._on_visibility,
            "CONNECTIVITY": self._on_connectivity,
            "SYNC_NOW": self._on_sync_now,
            "SYNC_ANALYTICS": self._on_sync_analytics,
            "GET_STATUS": self._on_get_status,
            "PING": self._on_ping,
        }
        ctx.connectivity.on_mode_change(self._on_mode_change)

    def _status_message(self) -> dict:
        connectivity = self.ctx.connectivity
        return {
            "type": "STATUS",
            "data": {
                "online": connectivity.is_online(),
                "mode": connectivity.get_current_mode().value,
                "pending_sync_count": self.ctx.queue.count(),
                "analytics_count": self.ctx.analytics.count(),
                "paused": self.ctx.scheduler.is_paused,
                "message": "Connected to Local Bridge",
            },
        }

    async def broadcast_status(self):
        """Broadcast current status to all connected clients."""
        await self.ctx.clients.post_all(self._status_message())

    def _on_mode_change(self, old_mode, new_mode, reason):
        try:
            asyncio.get_running_loop().create_task(self.broadcast_status())
        except RuntimeError:
            logger.debug("Mode change outside the event loop, not broadcast")

    # ==================== Dispatch ====================

    async def dispatch(self, data: dict) -> Optional[dict]:
        """Handle one decoded message; returns the reply to send back, if any."""
        msg_type = data.get("type")
        logger.info(f"Received: {msg_type}")

        handler = self._handlers.get(msg_type)
        if handler is not None:
            return await handler(data)
        if self.ctx.registration.handles(msg_type):
            return await self.ctx.registration.handle_message(data)

        logger.warning(f"Unknown message type: {msg_type}")
        return None

    async def _on_visibility(self, data: dict) -> dict:
        hidden = bool(data.get("hidden"))
        self.ctx.scheduler.set_visibility(hidden)
        return {"type": "VISIBILITY_ACK", "paused": self.ctx.scheduler.is_paused}

    async def _on_connectivity(self, data: dict) -> dict:
        self.ctx.connectivity.set_online(bool(data.get("online")))
        return self._status_message()

    async def _on_sync_now(self, data: dict) -> dict:
        results = await self.ctx.sync.sync_all(is_manual=True)
        await self.broadcast_status()
        return {"type": "SYNC_RESULT", "results": {k: r.to_dict() for k, r in results.items()}}

    async def _on_sync_analytics(self, data: dict) -> dict:
        result = await self.ctx.sync.sync_analytics(is_manual=True)
        return {"type": "SYNC_RESULT", "results": {"analytics": result.to_dict()}}

    async def _on_get_status(self, data: dict) -> dict:
        return self._status_message()

    async def _on_ping(self, data: dict) -> dict:
        return {"type": "PONG", "timestamp": data.get("timestamp")}

    # ==================== Connections ====================

    async def handler(self, websocket):
        """Serve one page connection."""
        client_id = uuid.uuid4().hex
        logger.info(f"Client connected: {websocket.remote_address}")

        async def send(message: dict):
            await websocket.send(json.dumps(message))

        client = self.ctx.clients.add(client_id, send)
        active = self.ctx.registration.active
        if active is not None:
            client.controller = active.label

        try:
            await send(self._status_message())

            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received")
                    await send({"type": "ERROR", "error": "Invalid JSON format"})
                    continue
                if not isinstance(data, dict):
                    await send({"type": "ERROR", "error": "Message must be an object"})
                    continue

                reply = await self.dispatch(data)
                if reply is not None:
                    await send(reply)

        except websockets.exceptions.ConnectionClosed:
            logger.info("Client disconnected")
        finally:
            self.ctx.clients.discard(client_id)

    async def serve(self, host: str = "0.0.0.0", port: int = 8002):
        """Start the bridge and run until cancelled."""
        async with websockets.serve(self.handler, host, port):
            logger.info(f"Local WebSocket Bridge started on ws://{host}:{port}")
            await asyncio.Future()
