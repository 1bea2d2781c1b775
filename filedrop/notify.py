"""Best-effort fan-out of service events.

Request handlers call ``Notifier.publish``, which only enqueues. A
background task drains the queue and hands every event to each subscriber
in turn; a subscriber that raises is logged and skipped, so neither the
request nor the other subscribers ever see its failure.
"""
import asyncio
import contextlib
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from fastapi import WebSocket
from loguru import logger

Subscriber = Callable[[str, Dict[str, Any]], Awaitable[None]]

FILE_UPLOADED = "fileUploaded"
PING_STATUS = "pingStatus"


class Notifier:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: List[Subscriber] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._task = asyncio.create_task(self._run(), name="notifier")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def drain(self) -> None:
        """Wait until every event published so far has been delivered."""
        if self._queue is not None:
            await self._queue.join()

    def publish(self, event: str, data: Dict[str, Any]) -> None:
        if self._queue is None:
            logger.warning(f"Notifier not started, dropping {event}")
            return
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull:
            logger.warning(f"Notification queue full, dropping {event}")

    async def _run(self) -> None:
        while True:
            event, data = await self._queue.get()
            try:
                await self._deliver(event, data)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: str, data: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event, data)
            except Exception:
                name = getattr(subscriber, "__name__", type(subscriber).__name__)
                logger.exception(f"Subscriber {name} failed to handle {event}")


class WebSocketHub:
    """Live clients connected on ``/ws``; every event is sent to all of them."""

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        self.connections.add(websocket)
        await websocket.accept()
        logger.info(f"Socket connected ({len(self.connections)} open)")

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)
        logger.info(f"Socket disconnected ({len(self.connections)} open)")

    async def __call__(self, event: str, data: Dict[str, Any]) -> None:
        message = {"event": event, "data": data}
        for websocket in list(self.connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping socket after failed send: {e}")
                self.disconnect(websocket)


class PushPublisher:
    """Sends a topic message for each uploaded file to a push gateway."""

    def __init__(self, endpoint: str, topic: str, token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.endpoint = endpoint
        self.topic = topic
        self.token = token
        self.client = client

    def build_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "notification": {
                "title": "New file received",
                "body": f'"{data.get("originalName", "")}"',
            },
            "data": {"fileData": json.dumps(data)},
        }

    async def __call__(self, event: str, data: Dict[str, Any]) -> None:
        if event != FILE_UPLOADED:
            return
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        message = self.build_message(data)
        if self.client is not None:
            response = await self.client.post(self.endpoint, json=message, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.endpoint, json=message, headers=headers)
        response.raise_for_status()
        logger.info(f"Push notification sent to topic {self.topic} for {data.get('storedKey')}")
