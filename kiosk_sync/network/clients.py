"""
clients.py - Registry of connected kiosk pages

Background components never hold a reference to a page; they post JSON
messages through this registry. The WebSocket bridge registers one client
per open connection.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ClientRegistry")

SendFn = Callable[[dict], Awaitable[None]]


@dataclass
class Client:
    client_id: str
    send: SendFn
    controller: Optional[str] = None  # version label of the controlling worker


class ClientRegistry:
    """Connected clients, addressable for message passing."""

    def __init__(self):
        self._clients: Dict[str, Client] = {}

    def add(self, client_id: str, send: SendFn) -> Client:
        client = Client(client_id=client_id, send=send)
        self._clients[client_id] = client
        logger.info(f"Client connected: {client_id}")
        return client

    def discard(self, client_id: str):
        if self._clients.pop(client_id, None) is not None:
            logger.info(f"Client disconnected: {client_id}")

    def get(self, client_id: str) -> Optional[Client]:
        return self._clients.get(client_id)

    def match_all(self) -> List[Client]:
        return list(self._clients.values())

    def __len__(self):
        return len(self._clients)

    def claim(self, version: str) -> int:
        """Make `version` the controller of every connected client."""
        for client in self._clients.values():
            client.controller = version
        return len(self._clients)

    async def post(self, client: Client, message: dict) -> bool:
        try:
            await client.send(message)
            return True
        except Exception as e:
            # A dead page must not break delivery to the others.
            logger.warning(f"Failed to post {message.get('type')} to {client.client_id}: {e}")
            return False

    async def post_all(self, message: dict) -> int:
        """Post to every client; returns how many deliveries succeeded."""
        clients = self.match_all()
        if not clients:
            return 0
        results = await asyncio.gather(*[self.post(client, message) for client in clients])
        return sum(1 for ok in results if ok)
