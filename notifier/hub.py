# notifier/hub.py
"""Fan-out of stored events to every open push-channel connection."""
import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ":heartbeat\n\n"
SUBSCRIBER_QUEUE_MAXSIZE = 64


def format_frame(data: Any) -> str:
    return f"data: {json.dumps(jsonable_encoder(data))}\n\n"


def connection_frame() -> str:
    return format_frame({
        "type": "connection",
        "message": "Connected to SSE stream",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


class SubscriberClosed(ConnectionError):
    pass


class StreamSubscriber:
    """Write handle of one push-channel connection.

    Writes never block: a closed handle raises ``SubscriberClosed`` and a
    client that stopped reading raises ``asyncio.QueueFull``.
    """

    _CLOSE = object()

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_MAXSIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.connected_at = time.time()

    def write(self, frame: str) -> None:
        if self.closed:
            raise SubscriberClosed("subscriber is closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(self._CLOSE)
        except asyncio.QueueFull:
            # Reader is gone or far behind; make room for the close marker
            self._queue.get_nowait()
            self._queue.put_nowait(self._CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        frame = await self._queue.get()
        if frame is self._CLOSE:
            raise StopAsyncIteration
        return frame


class BroadcastHub:
    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: Dict[Any, Optional[asyncio.Task]] = {}

    def subscribe(self, subscriber) -> None:
        self._subscribers[subscriber] = None
        try:
            subscriber.write(connection_frame())
        except Exception as e:
            self._drop(subscriber, e)
            return
        self._subscribers[subscriber] = asyncio.create_task(self._heartbeat(subscriber))
        logger.info("New client connected. Active connections: %d", self.count())

    def unsubscribe(self, subscriber) -> None:
        if subscriber not in self._subscribers:
            return
        task = self._subscribers.pop(subscriber)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        close = getattr(subscriber, "close", None)
        if close is not None:
            close()
        logger.info("Client disconnected. Active connections: %d", self.count())

    def _drop(self, subscriber, error: Exception) -> None:
        logger.warning("Error sending to client, dropping it: %r", error)
        self.unsubscribe(subscriber)

    async def _heartbeat(self, subscriber) -> None:
        while subscriber in self._subscribers:
            await asyncio.sleep(self.heartbeat_interval)
            if subscriber not in self._subscribers:
                return
            try:
                subscriber.write(HEARTBEAT_FRAME)
            except Exception as e:
                self._drop(subscriber, e)
                return

    def broadcast(self, event: Any) -> int:
        """Write ``event`` to every subscriber; returns how many received it."""
        frame = format_frame(event)
        delivered = 0
        for subscriber in list(self._subscribers):
            try:
                subscriber.write(frame)
            except Exception as e:
                self._drop(subscriber, e)
                continue
            delivered += 1
        return delivered

    def count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            self.unsubscribe(subscriber)
