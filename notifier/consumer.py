# notifier/consumer.py
"""
Consumer-group reader over Redis Streams.

Each partition stream gets its own worker task, so messages of one partition
reach the handler in order while partitions progress independently (bounded
by ``partitions_consumed_concurrently``). Handler failures are logged and the
message is dropped; they never stop the worker.

Offsets are stream entry ids. A processed entry is "resolved"; resolved
entries are acknowledged (``XACK``) by the auto-commit cadence. Entries left
pending by a member that went away are reclaimed once they have been idle for
``session_timeout_ms``.
"""
import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from notifier.broker import partition_streams

logger = logging.getLogger(__name__)

Heartbeat = Callable[[], Awaitable[None]]
MessageHandler = Callable[["QueueMessage", Heartbeat], Awaitable[Any]]
BatchHandler = Callable[..., Awaitable[Any]]


class RetryPolicy(BaseModel):
    retries: int = 8
    initial_retry_time_ms: int = 100
    multiplier: float = 2
    max_retry_time_ms: int = 30000

    def delay(self, attempt: int) -> float:
        """Backoff in seconds before retry number ``attempt`` (1-based)."""
        ms = self.initial_retry_time_ms * (self.multiplier ** (attempt - 1))
        return min(ms, self.max_retry_time_ms) / 1000


class ConsumerConfig(BaseModel):
    group_id: str = "default-consumer-group"
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 3000
    rebalance_timeout_ms: int = 60000
    allow_auto_topic_creation: bool = True
    max_in_flight_requests: int = 5
    max_wait_time_ms: int = 5000
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    partitions_consumed_concurrently: int = 3
    auto_commit: bool = True
    auto_commit_interval_ms: int = 5000
    auto_commit_threshold: int = 100
    partitions: int = 1


@dataclass
class QueueMessage:
    topic: str
    partition: int
    offset: str
    value: Optional[bytes]
    key: Optional[bytes] = None
    headers: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class Batch:
    topic: str
    partition: int
    messages: List[QueueMessage]

    @property
    def first_offset(self) -> Optional[str]:
        return self.messages[0].offset if self.messages else None

    @property
    def last_offset(self) -> Optional[str]:
        return self.messages[-1].offset if self.messages else None


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _to_message(topic: str, partition: int, entry_id, fields) -> QueueMessage:
    fields = {_text(k): v for k, v in (fields or {}).items()}
    value = fields.pop("value", None)
    key = fields.pop("key", None)
    return QueueMessage(
        topic=topic,
        partition=partition,
        offset=_text(entry_id),
        value=value,
        key=key,
        headers=fields,
    )


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class _Partition:
    topic: str
    partition: int
    stream: str
    resolved: List[str] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)
    last_commit: float = field(default_factory=time.monotonic)
    last_heartbeat: float = field(default_factory=time.monotonic)
    last_reclaim: float = field(default_factory=time.monotonic)


class QueueConsumer:
    def __init__(self, connections, consumer_name: Optional[str] = None):
        self._connections = connections
        self.consumer_name = consumer_name or _default_consumer_name()
        self.client = None
        self.config = ConsumerConfig()
        self.connected = False
        self.running = False
        self._partitions: List[_Partition] = []
        self._tasks: set = set()
        self._semaphore: Optional[asyncio.Semaphore] = None

    async def connect(self, config: Optional[ConsumerConfig] = None) -> None:
        if self.connected and self.client is not None:
            return
        if config is not None:
            self.config = config
        client = self._connections.get_connection()
        await client.ping()
        self.client = client
        self.connected = True
        logger.info(
            "Consumer %s connected (group=%s)", self.consumer_name, self.config.group_id
        )

    async def consume(
        self,
        topics: Union[str, Sequence[str]],
        on_message: Optional[MessageHandler] = None,
        on_batch: Optional[BatchHandler] = None,
        config: Optional[ConsumerConfig] = None,
        from_beginning: bool = False,
    ) -> None:
        topic_list = [topics] if isinstance(topics, str) else list(topics or [])
        topic_list = [t for t in topic_list if t]
        if not topic_list:
            raise ValueError("No topics provided to consume")
        if (on_message is None) == (on_batch is None):
            raise ValueError("Exactly one of on_message or on_batch is required")

        await self.connect(config)
        if config is not None:
            self.config = config

        partitions = []
        for topic in topic_list:
            for index, stream in enumerate(partition_streams(topic, self.config.partitions)):
                await self._subscribe(stream, from_beginning)
                partitions.append(_Partition(topic=topic, partition=index, stream=stream))
        self._partitions.extend(partitions)

        self._semaphore = asyncio.Semaphore(max(1, self.config.partitions_consumed_concurrently))
        self.running = True
        for part in partitions:
            task = asyncio.create_task(
                self._run_partition(part, on_message, on_batch),
                name=f"consumer:{part.stream}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._on_worker_done)
        logger.info(
            "Consuming %s as %s/%s", ", ".join(p.stream for p in partitions),
            self.config.group_id, self.consumer_name,
        )

    async def _subscribe(self, stream: str, from_beginning: bool) -> None:
        try:
            await self.client.xgroup_create(
                name=stream,
                groupname=self.config.group_id,
                id="0" if from_beginning else "$",
                mkstream=self.config.allow_auto_topic_creation,
            )
        except ResponseError as e:
            # The group already exists: keep its committed position
            if "BUSYGROUP" not in str(e):
                raise

    def _on_worker_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
            logger.warning("Consumer disconnected: %s", exc)
        else:
            logger.error("Consumer crashed", exc_info=exc)
        self.connected = False
        self.running = False
        for other in list(self._tasks):
            other.cancel()

    async def _fetch(self, part: _Partition) -> list:
        response = await self.client.xreadgroup(
            groupname=self.config.group_id,
            consumername=self.consumer_name,
            streams={part.stream: ">"},
            count=self.config.max_in_flight_requests,
            block=self.config.max_wait_time_ms,
        )
        entries = []
        for _stream, items in response or []:
            entries.extend(items)
        if time.monotonic() - part.last_reclaim >= self.config.rebalance_timeout_ms / 1000:
            entries.extend(await self._reclaim(part))
        return entries

    async def _reclaim(self, part: _Partition) -> list:
        part.last_reclaim = time.monotonic()
        result = await self.client.xautoclaim(
            part.stream,
            self.config.group_id,
            self.consumer_name,
            min_idle_time=self.config.session_timeout_ms,
            start_id="0-0",
            count=self.config.max_in_flight_requests,
        )
        claimed = result[1] if result and len(result) > 1 else []
        if claimed:
            logger.info("Reclaimed %d orphaned message(s) on %s", len(claimed), part.stream)
        return claimed

    async def _run_partition(self, part: _Partition, on_message, on_batch) -> None:
        attempt = 0
        while self.running:
            try:
                await self._maybe_commit(part)
                entries = await self._fetch(part)
            except (RedisConnectionError, RedisTimeoutError) as e:
                attempt += 1
                if attempt > self.config.retry.retries:
                    raise
                delay = self.config.retry.delay(attempt)
                logger.warning(
                    "Fetch from %s failed (%s), retry %d in %.2fs", part.stream, e, attempt, delay
                )
                await asyncio.sleep(delay)
                continue
            attempt = 0

            messages = []
            for entry_id, fields in entries:
                if fields is None:
                    # Trimmed from the stream before we could read it
                    part.resolved.append(_text(entry_id))
                    continue
                messages.append(_to_message(part.topic, part.partition, entry_id, fields))

            if messages:
                # Held until resolved; the heartbeat refreshes all of them
                part.in_flight = [m.offset for m in messages]
                async with self._semaphore:
                    if on_batch is not None:
                        await self._dispatch_batch(part, messages, on_batch)
                    else:
                        for message in messages:
                            await self._dispatch_message(part, message, on_message)

    def _heartbeat_for(self, part: _Partition) -> Heartbeat:
        async def heartbeat() -> None:
            now = time.monotonic()
            if now - part.last_heartbeat < self.config.heartbeat_interval_ms / 1000:
                return
            part.last_heartbeat = now
            # Resets the idle time of every entry this member still holds,
            # including fetched entries of partitions waiting on the semaphore
            for held in self._partitions:
                if held.in_flight:
                    await self.client.xclaim(
                        held.stream, self.config.group_id, self.consumer_name,
                        min_idle_time=0, message_ids=list(held.in_flight), justid=True,
                    )
        return heartbeat

    async def _dispatch_message(self, part: _Partition, message: QueueMessage, on_message) -> None:
        try:
            await on_message(message, self._heartbeat_for(part))
        except Exception:
            logger.exception(
                "on_message handler failed for %s offset %s", part.stream, message.offset
            )
        if message.offset in part.in_flight:
            part.in_flight.remove(message.offset)
        part.resolved.append(message.offset)

    async def _dispatch_batch(self, part: _Partition, messages: List[QueueMessage], on_batch) -> None:
        batch = Batch(topic=part.topic, partition=part.partition, messages=messages)
        pending = [m.offset for m in messages]
        part.in_flight = list(pending)

        def resolve_offset(offset: str) -> None:
            if offset not in pending:
                return
            upto = pending.index(offset) + 1
            part.resolved.extend(pending[:upto])
            del pending[:upto]
            part.in_flight = list(pending)

        def is_running() -> bool:
            return self.running

        try:
            await on_batch(batch, resolve_offset, self._heartbeat_for(part), is_running)
        except Exception:
            logger.exception(
                "on_batch handler failed for %s (%s..%s)",
                part.stream, batch.first_offset, batch.last_offset,
            )
        if pending:
            resolve_offset(pending[-1])
        part.in_flight = []

    async def _maybe_commit(self, part: _Partition) -> None:
        if not self.config.auto_commit or not part.resolved:
            return
        due = time.monotonic() - part.last_commit >= self.config.auto_commit_interval_ms / 1000
        if due or len(part.resolved) >= self.config.auto_commit_threshold:
            await self._commit_partition(part)

    async def _commit_partition(self, part: _Partition) -> None:
        if not part.resolved:
            return
        ids, part.resolved = part.resolved, []
        await self.client.xack(part.stream, self.config.group_id, *ids)
        part.last_commit = time.monotonic()

    async def commit(self) -> None:
        """Acknowledge every resolved offset now."""
        if self.client is None:
            return
        for part in self._partitions:
            await self._commit_partition(part)

    async def disconnect(self) -> None:
        self.running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.commit()
        except Exception as e:
            logger.error("Error during consumer disconnect: %s", e)
        finally:
            self._tasks.clear()
            self._partitions = []
            self.client = None
            self.connected = False
            self.running = False

    def status(self) -> Dict[str, bool]:
        return {"connected": self.connected, "running": self.running}
