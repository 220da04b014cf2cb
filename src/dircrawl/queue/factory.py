"""Queue factory: picks the broker transport at process startup.

Processing code only sees the Publisher and DirectoryProcessor protocols;
this is the single place that knows about redis vs rabbitmq.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from dircrawl.queue.protocol import DirectoryProcessor, Publisher
from dircrawl.queue.types import QueueNames

if TYPE_CHECKING:
    from dircrawl.config import CrawlerSettings
    from dircrawl.queue.consumer import PollConsumer
    from dircrawl.queue.rabbitmq import PushConsumer

logger = logging.getLogger(__name__)


def create_consumer(
    settings: CrawlerSettings,
    processor: DirectoryProcessor,
    queues: QueueNames | None = None,
) -> PollConsumer | PushConsumer:
    """Create one directory-queue consumer for the configured broker.

    Returns:
        PollConsumer for "redis", PushConsumer for "rabbitmq". Neither is
        connected yet; start() does that.
    """
    if settings.broker == "rabbitmq":
        from dircrawl.queue.rabbitmq import PushConsumer

        logger.debug(f"[Queue] Creating RabbitMQ push consumer for {settings.amqp_url}")
        return PushConsumer(
            processor,
            amqp_url=settings.amqp_url,
            queues=queues,
            prefetch_count=settings.prefetch_count,
            policy=settings.policy,
        )

    from dircrawl.queue.consumer import PollConsumer

    logger.debug(f"[Queue] Creating Redis poll consumer for {settings.redis_url}")
    return PollConsumer(
        processor,
        redis_url=settings.redis_url,
        group=settings.group,
        queues=queues,
        receive_timeout_ms=settings.receive_timeout_ms,
        reclaim_idle_ms=settings.reclaim_idle_ms,
        policy=settings.policy,
    )


@contextmanager
def open_publisher(settings: CrawlerSettings, queues: QueueNames | None = None) -> Iterator[Publisher]:
    """Open a standalone publisher (e.g. for seeding) and close its session on exit.

    Raises:
        TransportError: If the broker cannot be reached.
    """
    queues = queues or QueueNames()

    if settings.broker == "rabbitmq":
        import pika
        from pika.exceptions import AMQPError

        from dircrawl.queue.exceptions import TransportError
        from dircrawl.queue.rabbitmq import RabbitMQPublisher, declare_queues

        connection = None
        try:
            connection = pika.BlockingConnection(pika.URLParameters(settings.amqp_url))
            channel = connection.channel()
            channel.confirm_delivery()
            declare_queues(channel, queues)
        except AMQPError as e:
            if connection is not None and connection.is_open:
                connection.close()
            raise TransportError(f"Cannot open a channel on {settings.amqp_url}: {e!r}") from e
        try:
            yield RabbitMQPublisher(channel, queues)
        finally:
            if connection.is_open:
                connection.close()
        return

    from dircrawl.queue.redis_queue import RedisStreamPublisher

    publisher = RedisStreamPublisher(settings.redis_url, queues)
    try:
        yield publisher
    finally:
        publisher.close()
