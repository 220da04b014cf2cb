"""Poll consumer for the directory queue over Redis Streams.

Pull model: a dedicated thread repeatedly
- reclaims one entry left pending longer than reclaim_idle_ms (XAUTOCLAIM),
  which is how failed or orphaned deliveries get redelivered, or else
- blocks at most receive_timeout_ms for a new entry (XREADGROUP),
then hands the payload to DeliveryHandler and settles it:

- ACK / DROP: XACK + XDEL, the entry leaves the queue
- RETRY: nothing, the entry stays pending until it is reclaimed
- RETRY past the RedeliveryPolicy: copy to the quarantine stream, then settle

While a message is in hand its pending entry is re-claimed (XCLAIM JUSTID)
several times per reclaim_idle_ms, so other consumers only reclaim entries
whose consumer has failed or died. Payloads are read as raw bytes and only
decoded by the codec.

Shutdown is cooperative: stop() sets a flag that the loop checks after each
bounded wait, so stop() + join() returns within one receive timeout plus the
time needed to finish the message in hand.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

import redis

from dircrawl.queue.delivery import DeliveryHandler, Outcome, RedeliveryPolicy, failure_details
from dircrawl.queue.exceptions import PublishError, TransportError
from dircrawl.queue.protocol import DirectoryProcessor
from dircrawl.queue.redis_queue import DEFAULT_REDIS_URL, RedisStreamPublisher
from dircrawl.queue.types import QueueNames

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "crawler"
DEFAULT_RECEIVE_TIMEOUT_MS = 3000  # Bounded wait, also the worst-case stop latency
DEFAULT_RECLAIM_IDLE_MS = 30000  # Pending entries older than this are redelivered
RECONNECT_PAUSE_S = 1.0
LEASE_RENEWALS = 3  # Idle-time refreshes per reclaim_idle_ms while a message is in hand


class ConsumerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    CLOSED = "closed"


def default_consumer_name() -> str:
    """Unique consumer name: hostname-pid-random."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def _text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _fields(fields: dict[Any, Any] | None) -> dict[str, Any]:
    """Entry fields keyed by name, values left as the client returned them."""
    return {_text(key): value for key, value in (fields or {}).items()}


class PollConsumer:
    """Redis Streams consumer that processes one directory message at a time.

    Each instance owns its Redis client, and a RedisStreamPublisher bound to
    that client is what the processor publishes through.
    """

    def __init__(
        self,
        processor: DirectoryProcessor,
        redis_url: str = DEFAULT_REDIS_URL,
        group: str = DEFAULT_GROUP,
        consumer: str | None = None,
        queues: QueueNames | None = None,
        receive_timeout_ms: int = DEFAULT_RECEIVE_TIMEOUT_MS,
        reclaim_idle_ms: int = DEFAULT_RECLAIM_IDLE_MS,
        policy: RedeliveryPolicy | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        """Initialize consumer.

        Args:
            processor: Handler for decoded directory messages.
            redis_url: Redis connection URL, used when no client is given.
            group: Consumer group shared by all crawler instances.
            consumer: Consumer name (default: hostname-pid-random).
            queues: Stream names.
            receive_timeout_ms: Max time one receive blocks.
            reclaim_idle_ms: Idle time after which a pending entry is redelivered.
            policy: Redelivery bound before quarantine.
            client: Pre-built Redis client (owned and closed by this consumer).
        """
        self._processor = processor
        self._url = redis_url
        self._group = group
        self._consumer = consumer or default_consumer_name()
        self._queues = queues or QueueNames()
        self._receive_timeout_ms = receive_timeout_ms
        self._reclaim_idle_ms = reclaim_idle_ms
        self._policy = policy or RedeliveryPolicy()

        self._client: redis.Redis | None = client
        self._publisher: RedisStreamPublisher | None = None
        self._handler: DeliveryHandler | None = None
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = ConsumerState.IDLE
        self._state_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._consumer

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def publisher(self) -> RedisStreamPublisher:
        self.open()
        assert self._publisher is not None
        return self._publisher

    def _get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=False)
        return self._client

    def _ensure_group(self) -> None:
        """Create consumer group if it doesn't exist."""
        client = self._get_client()
        try:
            # MKSTREAM creates the stream if it doesn't exist
            client.xgroup_create(self._queues.dirs, self._group, id="0", mkstream=True)
            logger.info(f"[PollConsumer] Created group '{self._group}' on '{self._queues.dirs}'")
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.debug(f"[PollConsumer] Group '{self._group}' already exists")
            else:
                raise

    def open(self) -> None:
        """Connect, ensure the consumer group and bind the publisher.

        Raises:
            TransportError: If Redis cannot be reached. Fatal at startup.
        """
        if self._handler is not None:
            return
        try:
            self._ensure_group()
        except redis.exceptions.RedisError as e:
            raise TransportError(f"Cannot attach to '{self._queues.dirs}': {e}") from e

        self._publisher = RedisStreamPublisher(self._url, self._queues, client=self._get_client())
        self._handler = DeliveryHandler(self._processor, self._publisher)

    def start(self) -> None:
        """Start the consumer thread (IDLE -> RUNNING)."""
        with self._state_lock:
            if self._state is not ConsumerState.IDLE:
                raise RuntimeError(f"Consumer '{self._consumer}' cannot start from state {self._state.value}")
            self.open()
            self._state = ConsumerState.RUNNING

        self._thread = threading.Thread(
            target=self.run,
            daemon=True,
            name=f"poll-consumer-{self._consumer}",
        )
        self._thread.start()

    def stop(self) -> None:
        """Ask the loop to exit after its current bounded wait."""
        logger.info(f"[PollConsumer] Shutdown requested for '{self._consumer}'")
        self._shutdown.set()
        with self._state_lock:
            if self._state is ConsumerState.RUNNING:
                self._state = ConsumerState.STOP_REQUESTED

    def join(self, timeout: float | None = None) -> None:
        """Block until the consumer thread has exited."""
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        """Run the consume loop until stop() is called, then release the session."""
        self.open()
        with self._state_lock:
            if self._state is ConsumerState.IDLE:
                self._state = ConsumerState.RUNNING
        logger.info(f"[PollConsumer] Starting consumer '{self._consumer}' on '{self._queues.dirs}'")

        try:
            while not self._shutdown.is_set():
                try:
                    self.poll_once()
                except TransportError as e:
                    logger.error(f"[PollConsumer] {e}")
                    self._shutdown.wait(RECONNECT_PAUSE_S)
                except Exception:
                    logger.exception(f"[PollConsumer] Unexpected error in consumer '{self._consumer}'")
                    self._shutdown.wait(RECONNECT_PAUSE_S)
        finally:
            self.close()
            logger.info(f"[PollConsumer] Shutdown complete for '{self._consumer}'")

    def close(self) -> None:
        """Release the Redis session. Idempotent."""
        with self._state_lock:
            self._state = ConsumerState.CLOSED
        if self._client is not None:
            try:
                self._client.close()
            except redis.exceptions.RedisError as e:
                logger.warning(f"[PollConsumer] Error closing Redis client: {e}")
            self._client = None
        self._publisher = None
        self._handler = None

    def process_pending(self, block_ms: int = 100) -> int:
        """Process deliveries until none arrives within block_ms (for recovery/testing).

        Returns:
            Number of deliveries handled.
        """
        processed = 0
        while not self._shutdown.is_set():
            if self.poll_once(timeout_ms=block_ms) is None:
                break
            processed += 1
        return processed

    def poll_once(self, timeout_ms: int | None = None) -> Outcome | None:
        """Receive and handle at most one delivery.

        Args:
            timeout_ms: Max wait for a new entry (default: receive_timeout_ms).

        Returns:
            The delivery's outcome, or None if nothing arrived in time.

        Raises:
            TransportError: If reading from Redis failed.
        """
        self.open()
        entry = self._receive(self._receive_timeout_ms if timeout_ms is None else timeout_ms)
        if entry is None:
            return None

        msg_id, fields = entry
        assert self._handler is not None
        with self._lease(msg_id):
            outcome = self._handler.handle(fields.get("data", b""), message_id=msg_id)

        if outcome is Outcome.RETRY:
            deliveries = self._delivery_count(msg_id)
            if self._policy.exhausted(deliveries):
                self._quarantine(msg_id, fields, self._handler.last_error, deliveries)
            else:
                logger.warning(
                    f"[PollConsumer] Leaving {msg_id} unacknowledged "
                    f"(delivery {deliveries}), it will be redelivered"
                )
        else:
            self._settle(msg_id)

        return outcome

    def _receive(self, timeout_ms: int) -> tuple[str, dict[str, Any]] | None:
        client = self._get_client()
        stream = self._queues.dirs
        try:
            claimed: Any = client.xautoclaim(
                stream,
                self._group,
                self._consumer,
                min_idle_time=self._reclaim_idle_ms,
                start_id="0-0",
                count=1,
            )
            for msg_id, fields in claimed[1] if claimed else []:
                if fields:
                    logger.info(f"[PollConsumer] Reclaimed pending entry {_text(msg_id)}")
                    return _text(msg_id), _fields(fields)
                # Entry was deleted while pending
                client.xack(stream, self._group, msg_id)

            result: Any = client.xreadgroup(
                self._group,
                self._consumer,
                {stream: ">"},
                count=1,
                block=timeout_ms,
            )
        except redis.exceptions.RedisError as e:
            raise TransportError(f"Failed to read from '{stream}': {e}") from e

        for _stream_name, stream_messages in result or []:
            for msg_id, fields in stream_messages:
                return _text(msg_id), _fields(fields)
        return None

    @contextmanager
    def _lease(self, msg_id: str) -> Iterator[None]:
        """Keep msg_id's idle time below reclaim_idle_ms until the block exits."""
        if self._reclaim_idle_ms <= 0:
            yield
            return

        client = self._get_client()
        done = threading.Event()
        interval = self._reclaim_idle_ms / 1000 / LEASE_RENEWALS

        def renew() -> None:
            while not done.wait(interval):
                try:
                    client.xclaim(
                        self._queues.dirs,
                        self._group,
                        self._consumer,
                        min_idle_time=0,
                        message_ids=[msg_id],
                        justid=True,
                    )
                except redis.exceptions.RedisError as e:
                    logger.warning(f"[PollConsumer] Could not renew {msg_id}: {e}")

        renewer = threading.Thread(target=renew, daemon=True, name=f"lease-{self._consumer}")
        renewer.start()
        try:
            yield
        finally:
            done.set()
            renewer.join()

    def _delivery_count(self, msg_id: str) -> int:
        """Times Redis has delivered this entry (1 on first delivery)."""
        try:
            pending: Any = self._get_client().xpending_range(
                self._queues.dirs, self._group, min=msg_id, max=msg_id, count=1
            )
        except redis.exceptions.RedisError as e:
            logger.warning(f"[PollConsumer] Could not read delivery count of {msg_id}: {e}")
            return 1
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    def _settle(self, msg_id: str) -> None:
        """Acknowledge and delete an entry."""
        stream = self._queues.dirs
        try:
            pipe = self._get_client().pipeline()
            pipe.xack(stream, self._group, msg_id)
            pipe.xdel(stream, msg_id)
            pipe.execute()
        except redis.exceptions.RedisError as e:
            # Stays pending and will be redelivered
            raise TransportError(f"Failed to acknowledge {msg_id}: {e}") from e

    def _quarantine(
        self,
        msg_id: str,
        fields: dict[str, Any],
        error: Exception | None,
        deliveries: int,
    ) -> None:
        """Move a message that keeps failing to the quarantine stream."""
        assert self._publisher is not None
        entry = {
            "data": fields.get("data", b""),
            "original_stream": self._queues.dirs,
            "original_id": msg_id,
            **failure_details(error, deliveries, self._consumer),
        }
        try:
            self._publisher.publish_fields(self._queues.quarantine, entry)
        except PublishError as e:
            logger.error(f"[PollConsumer] Could not quarantine {msg_id}, leaving it pending: {e}")
            return
        self._settle(msg_id)
        logger.warning(f"[PollConsumer] Quarantined {msg_id} after {deliveries} deliveries: {error}")
