"""Redis Streams publisher for crawler messages.

Publishes with XADD, one stream per message kind, storing the JSON payload
in a single 'data' field. Streams are never trimmed: an entry is removed
only once a consumer acknowledges it, so unconsumed work is never lost.
Durability of an accepted XADD follows the server's persistence settings.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import redis

from dircrawl.queue.codec import encode
from dircrawl.queue.exceptions import PublishError
from dircrawl.queue.types import (
    CollectionInventoryMessage,
    DirectoryMessage,
    ProductMessage,
    QueueMessage,
    QueueNames,
)

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379"
LARGE_MESSAGE_BYTES = 1_000_000


class RedisStreamPublisher:
    """Publisher bound to one Redis client.

    Raises PublishError on Redis unavailability (fail loudly, no retry).
    """

    def __init__(
        self,
        url: str = DEFAULT_REDIS_URL,
        queues: QueueNames | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        """Initialize publisher.

        Args:
            url: Redis connection URL, used when no client is given.
            queues: Stream names per message kind.
            client: Existing client to share (e.g. a consumer's session).
        """
        self._url = url
        self._queues = queues or QueueNames()
        self._client = client
        self._connected: bool | None = True if client is not None else None

    def _get_client(self) -> redis.Redis:
        """Get or create Redis client with lazy connection probe.

        Raises:
            redis.exceptions.ConnectionError: If Redis is unavailable.
        """
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)

        if self._connected is None:
            try:
                self._client.ping()
                self._connected = True
                logger.info(f"[RedisPublisher] Connected to {self._url}")
            except redis.exceptions.ConnectionError:
                self._connected = False
                raise

        return self._client

    def publish_directory(self, item: DirectoryMessage) -> None:
        self._send(self._queues.dirs, item)

    def publish_product(self, item: ProductMessage) -> None:
        self._send(self._queues.products, item)

    def publish_collection_inventory(self, item: CollectionInventoryMessage) -> None:
        self._send(self._queues.collections, item)

    def _send(self, stream: str, message: QueueMessage) -> str:
        serialized = encode(message)

        size = len(serialized)
        if size > LARGE_MESSAGE_BYTES:
            warnings.warn(
                f"Large message ({size} bytes) being published to {stream}.",
                stacklevel=3,
            )

        return self.publish_fields(stream, {"data": serialized})

    def publish_fields(self, stream: str, fields: dict[str, str | bytes]) -> str:
        """Append a raw entry to a stream.

        Returns:
            Entry ID assigned by Redis (e.g. '1234567890-0').

        Raises:
            PublishError: If Redis rejects the entry or is unreachable.
        """
        try:
            msg_id: Any = self._get_client().xadd(stream, fields)
        except redis.exceptions.RedisError as e:
            raise PublishError(stream, str(e)) from e

        if isinstance(msg_id, bytes):
            msg_id = msg_id.decode()
        logger.debug(f"[RedisPublisher] Published to {stream}: {msg_id}")
        return str(msg_id)

    def is_available(self) -> bool:
        """Check if Redis is reachable."""
        try:
            self._get_client().ping()
            return True
        except redis.exceptions.ConnectionError:
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._connected = None
