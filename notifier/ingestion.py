# notifier/ingestion.py
"""
Receive -> persist -> broadcast.

Webhook requests and queue messages end up on the same path. The queue side
is optional: when the broker is missing or unreachable at startup the service
keeps running with webhook ingestion and the push channel only.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from notifier.config import Settings
from notifier.consumer import ConsumerConfig, QueueConsumer, QueueMessage, RetryPolicy
from notifier.schemas import decode_message, normalize_payload

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(self, settings: Settings, store, hub, consumer: Optional[QueueConsumer] = None):
        self.settings = settings
        self.store = store
        self.hub = hub
        self.consumer = consumer
        self.topic = settings.consumer_topic
        self.group_id = settings.group_id
        self.queue_enabled = settings.queue_enabled and consumer is not None
        self.started = False
        self.consuming = False

    def consumer_config(self) -> ConsumerConfig:
        s = self.settings
        return ConsumerConfig(
            group_id=self.group_id,
            session_timeout_ms=s.session_timeout_ms,
            heartbeat_interval_ms=s.heartbeat_interval_ms,
            rebalance_timeout_ms=s.rebalance_timeout_ms,
            partitions_consumed_concurrently=s.consumer_concurrency,
            auto_commit=True,
            auto_commit_interval_ms=s.auto_commit_interval_ms,
            auto_commit_threshold=s.auto_commit_threshold,
            partitions=s.topic_partitions,
            retry=RetryPolicy(
                retries=s.retries,
                initial_retry_time_ms=s.initial_retry_ms,
                max_retry_time_ms=s.max_retry_ms,
            ),
        )

    async def ingest_webhook(self, body: Any) -> Dict[str, Any]:
        """Persist a webhook event and push the stored record to subscribers.

        Store errors propagate to the caller; nothing is broadcast then.
        """
        data = dict(normalize_payload(body))
        if not data.get("timestamp"):
            data["timestamp"] = datetime.now(timezone.utc).isoformat()
        saved = await self.store.create(data)
        delivered = self.hub.broadcast(saved)
        logger.info("Webhook event %s broadcast to %d client(s)", saved.get("id"), delivered)
        return saved

    async def handle_message(self, message: QueueMessage, heartbeat=None) -> None:
        payload = decode_message(message.value)
        logger.debug("Processing message %s from %s[%s]", message.offset, message.topic, message.partition)
        try:
            saved = await self.store.create(payload)
        except Exception:
            logger.exception("Failed to save event from %s offset %s", message.topic, message.offset)
            # Still deliver it live; it just won't be in the history
            self.hub.broadcast(payload)
        else:
            logger.info("Event saved with ID %s", saved.get("id"))
            self.hub.broadcast(saved)
        if heartbeat is not None:
            await heartbeat()

    async def check_connection(self, timeout_ms: int = 10000) -> bool:
        if not self.queue_enabled:
            return False
        probe = ConsumerConfig(
            group_id=self.group_id,
            session_timeout_ms=30000,
            retry=RetryPolicy(retries=3, initial_retry_time_ms=300, multiplier=2),
        )
        try:
            await asyncio.wait_for(self.consumer.connect(probe), timeout_ms / 1000)
        except Exception as e:
            logger.warning("Broker connectivity check failed: %s", str(e) or type(e).__name__)
            try:
                await self.consumer.disconnect()
            except Exception as close_error:
                logger.debug("Ignoring error while dropping probe connection: %s", close_error)
            return False
        logger.info("Broker connection established successfully")
        return True

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        if not self.queue_enabled:
            logger.warning("No broker configured; queue consumption disabled. Push channel still works.")
            return

        if not await self.check_connection(self.settings.probe_timeout_ms):
            logger.warning("Broker not reachable; consumer not started. Webhook ingestion only.")
            return

        logger.info("Consuming topic %s as group %s", self.topic, self.group_id)
        try:
            await self.consumer.consume(
                self.topic,
                on_message=self.handle_message,
                config=self.consumer_config(),
                from_beginning=False,
            )
        except Exception:
            logger.exception("Could not start consuming %s; continuing without the queue", self.topic)
            await self.consumer.disconnect()
            return
        self.consuming = True

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        self.consuming = False
        if self.consumer is not None:
            await self.consumer.disconnect()

    def status(self) -> Dict[str, Any]:
        return {
            "queue_enabled": self.queue_enabled,
            "consuming": self.consuming and bool(self.consumer and self.consumer.running),
            "consumer": self.consumer.status() if self.consumer is not None else None,
        }
