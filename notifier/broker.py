# notifier/broker.py
"""
Shared broker connection.

Topics live in Redis Streams. A topic with more than one partition is spread
over ``"{topic}:{partition}"`` stream keys; producers pick the partition from
the message key so that messages with the same key stay ordered.
"""
import logging
import zlib
from typing import List, Optional, Union
from urllib.parse import urlparse

from redis.asyncio import Redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from notifier.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379


def _as_url(address: str) -> str:
    return address if "://" in address else f"redis://{address}"


def stream_name(topic: str, partition: int, partitions: int = 1) -> str:
    if partitions <= 1:
        return topic
    return f"{topic}:{partition}"


def partition_streams(topic: str, partitions: int = 1) -> List[str]:
    return [stream_name(topic, p, partitions) for p in range(max(1, partitions))]


def partition_for(key: Optional[Union[str, bytes]], partitions: int = 1) -> int:
    if partitions <= 1 or key is None:
        return 0
    if isinstance(key, str):
        key = key.encode("utf-8")
    return zlib.crc32(key) % partitions


class BrokerConnectionManager:
    """Owns the single broker client used by every consumer and producer."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client = None

    def _retry(self) -> Retry:
        backoff = ExponentialBackoff(
            cap=self.settings.max_retry_ms / 1000,
            base=self.settings.initial_retry_ms / 1000,
        )
        return Retry(backoff, self.settings.retries)

    def _build(self, addresses: List[str]):
        options = dict(
            socket_connect_timeout=self.settings.connect_timeout_ms / 1000,
            socket_timeout=self.settings.request_timeout_ms / 1000,
            retry=self._retry(),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            client_name=self.settings.client_id,
        )
        if len(addresses) == 1:
            return Redis.from_url(_as_url(addresses[0]), **options)
        nodes = []
        for address in addresses:
            parsed = urlparse(_as_url(address))
            nodes.append(ClusterNode(parsed.hostname or "localhost", parsed.port or DEFAULT_PORT))
        return RedisCluster(startup_nodes=nodes, **options)

    def get_connection(self):
        """Return the process-wide client, creating it on first use.

        Raises ``ConfigurationError`` when no broker address is configured.
        """
        if self._client is None:
            addresses = self.settings.broker_addresses()
            self._client = self._build(addresses)
            logger.info("Broker client created for %s", ", ".join(addresses))
        return self._client

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as e:
            logger.warning("Error while closing broker connection: %s", e)
