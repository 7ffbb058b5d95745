# notifier/producer.py
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from notifier.broker import partition_for, stream_name

logger = logging.getLogger(__name__)


def _encode_value(value: Any):
    if value is None or isinstance(value, (bytes, str)):
        return value if value is not None else ""
    return json.dumps(value, default=str)


class QueueProducer:
    def __init__(self, connections, partitions: int = 1, max_len: Optional[int] = None,
                 wait_timeout_ms: int = 5000):
        self._connections = connections
        self.partitions = partitions
        self.max_len = max_len
        self.wait_timeout_ms = wait_timeout_ms
        self.client = None
        self.connected = False

    async def connect(self) -> None:
        if self.connected:
            return
        client = self._connections.get_connection()
        await client.ping()
        self.client = client
        self.connected = True

    async def send(self, topic: str, messages, acks: Optional[int] = None) -> List[str]:
        """Append one message or an ordered list of messages to ``topic``.

        A message is either a bare value or a dict with ``value`` and an
        optional ``key``; the key selects the partition. ``acks`` greater than
        one waits for ``acks - 1`` replicas to confirm the writes.
        """
        if not topic:
            raise ValueError("topic is required")
        batch = messages if isinstance(messages, (list, tuple)) else [messages]
        await self.connect()

        ids = []
        for message in batch:
            if isinstance(message, dict) and "value" in message:
                key = message.get("key")
                fields: Dict[str, Any] = {"value": _encode_value(message["value"])}
                if key is not None:
                    fields["key"] = str(key)
                for name, header in (message.get("headers") or {}).items():
                    fields[name] = _encode_value(header)
            else:
                key = None
                fields = {"value": _encode_value(message)}
            stream = stream_name(topic, partition_for(key, self.partitions), self.partitions)
            entry_id = await self.client.xadd(stream, fields, maxlen=self.max_len, approximate=True)
            ids.append(entry_id.decode() if isinstance(entry_id, bytes) else entry_id)

        if acks is not None and acks > 1:
            await self.client.wait(acks - 1, self.wait_timeout_ms)
        return ids

    async def disconnect(self) -> None:
        # The client belongs to the connection manager; only drop our handle
        self.client = None
        self.connected = False


class EventUpdatePublisher:
    """Announces ``EventUpdated`` on the output topic without blocking the caller."""

    def __init__(self, producer: QueueProducer, topic: str):
        self.producer = producer
        self.topic = topic
        self._pending: set = set()

    async def publish(self, event: Dict[str, Any]) -> None:
        body = {
            "type": "EventUpdated",
            "data": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.producer.send(
                self.topic, [{"key": str(event.get("id")), "value": body}]
            )
        except Exception as e:
            logger.warning("Failed to publish EventUpdated for %s: %s", event.get("id"), e)

    def schedule(self, event: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
