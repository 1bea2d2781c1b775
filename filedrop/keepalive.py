import asyncio
import contextlib
import random
from typing import Optional

import httpx
from loguru import logger

from .notify import PING_STATUS, Notifier


class KeepAlive:
    """Pings a URL at random intervals so the hosting instance stays warm.

    Runs as its own task; every outcome is logged and published as a
    ``pingStatus`` event, nothing is raised to the caller.
    """

    def __init__(self, url: str, notifier: Optional[Notifier] = None, min_minutes: int = 2,
                 max_minutes: int = 7, client: Optional[httpx.AsyncClient] = None):
        if min_minutes < 0 or max_minutes < min_minutes:
            raise ValueError("Keep-alive interval must satisfy 0 <= min <= max")
        self.url = url
        self.notifier = notifier
        self.min_minutes = min_minutes
        self.max_minutes = max_minutes
        self.client = client
        self._task: Optional[asyncio.Task] = None

    def _status(self, message: str) -> None:
        if self.notifier is not None:
            self.notifier.publish(PING_STATUS, {"message": message})

    async def _get(self) -> httpx.Response:
        if self.client is not None:
            response = await self.client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(self.url)
        response.raise_for_status()
        return response

    async def ping_once(self) -> bool:
        try:
            response = await self._get()
        except httpx.HTTPError as e:
            message = f"Ping to {self.url} failed: {e}"
            logger.error(message)
            self._status(message)
            return False
        message = f"Ping sent to {self.url} - Status: {response.status_code}"
        logger.info(message)
        self._status(message)
        return True

    def next_delay(self) -> float:
        return random.randint(self.min_minutes, self.max_minutes) * 60.0

    async def run(self) -> None:
        while True:
            await self.ping_once()
            delay = self.next_delay()
            message = f"Next ping in {delay / 60:.1f} minutes"
            logger.info(message)
            self._status(message)
            await asyncio.sleep(delay)

    def start(self) -> None:
        self._task = asyncio.create_task(self.run(), name="keepalive")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
