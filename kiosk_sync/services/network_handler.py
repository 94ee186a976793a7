"""
network_handler.py - JSON POST with retry and exponential backoff

Used by the sync engine for both the submission and analytics endpoints.
A non-2xx status, a body that is not JSON, or a body the caller's validator
rejects all count as a failed attempt.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .errors import ServerRejectionError, TransportError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("NetworkHandler")


def backoff_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Delay after failed attempt `attempt` (1-indexed): base * 2^(attempt-1)."""
    return base_delay_ms * (2 ** (attempt - 1))


class RequestSender:
    """
    Sends a JSON payload up to `max_retries` times.

    Pass a shared aiohttp session to reuse connections; without one a
    session is opened per send.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 3,
        retry_delay_ms: int = 2000,
        timeout_s: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.session = session
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.timeout_s = timeout_s
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        self.headers.update(headers or {})
        self.sleep = sleep
        self.last_delays: List[int] = []

    async def send(self, url: str, payload: Dict, validate: Callable[[Any], Any] = None) -> Any:
        """
        POST `payload` to `url` and return the decoded (and validated) body.

        Raises the last TransportError / ServerRejectionError once every
        attempt has failed.
        """
        self.last_delays = []
        for attempt in range(1, self.max_retries + 1):
            try:
                body = await self._post_once(url, payload)
                return validate(body) if validate else body

            except (TransportError, ServerRejectionError) as e:
                if attempt >= self.max_retries:
                    logger.error(f"Attempt {attempt}/{self.max_retries} failed: {e}. Giving up.")
                    raise
                delay = backoff_delay_ms(attempt, self.retry_delay_ms)
                self.last_delays.append(delay)
                logger.warning(f"Attempt {attempt}/{self.max_retries} failed: {e}. Retrying in {delay}ms...")
                await self.sleep(delay / 1000)

    async def _post_once(self, url: str, payload: Dict) -> Any:
        if self.session is not None:
            return await self._post(self.session, url, payload)
        async with aiohttp.ClientSession() as session:
            return await self._post(session, url, payload)

    async def _post(self, session: aiohttp.ClientSession, url: str, payload: Dict) -> Any:
        try:
            async with session.post(
                url,
                json=payload,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            ) as response:
                if not 200 <= response.status < 300:
                    error_text = await response.text()
                    raise ServerRejectionError(
                        f"Server returned status: {response.status} {error_text[:200]}".rstrip(),
                        status=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise ServerRejectionError(f"Malformed response body: {e}", status=response.status) from e

        except asyncio.TimeoutError as e:
            raise TransportError(f"Request to {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Connection error: {e}") from e
