"""Client for a running bundler's control endpoints."""
from __future__ import annotations

import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)

RELOAD_MESSAGE = {"version": 2, "method": "reload"}


class MetroClient:
    """Talks to the bundler over its /message websocket."""

    def __init__(self, host: str = "localhost", port: int = 8081, timeout: float = 5.0) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout

    @property
    def message_url(self) -> str:
        return f"ws://{self._host}:{self._port}/message"

    async def reload(self) -> bool:
        """Ask every connected app to reload. Returns False on failure."""
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.ws_connect(self.message_url) as ws:
                    await ws.send_json(RELOAD_MESSAGE)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("Reload request to %s failed: %s", self.message_url, exc)
            return False
        logger.info("Reload requested via %s", self.message_url)
        return True
