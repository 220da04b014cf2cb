"""Reliable-delivery queue layer for distributed directory crawling.

Crawler workers drain the directory queue and feed it with the
subdirectories they find, so any number of workers cooperatively walk a
tree. Two transports are supported with at-least-once delivery:

- Redis Streams, consumed by PollConsumer (pull with bounded wait)
- RabbitMQ, consumed by PushConsumer (broker callback)

Usage:
    from dircrawl.queue import create_consumer
    from dircrawl.config import CrawlerSettings

    consumer = create_consumer(CrawlerSettings.from_env(), processor)
    consumer.start()
"""

from dircrawl.queue.codec import decode, encode
from dircrawl.queue.consumer import ConsumerState, PollConsumer
from dircrawl.queue.delivery import DeliveryHandler, Outcome, RedeliveryPolicy
from dircrawl.queue.exceptions import (
    CrawlerQueueError,
    DecodeError,
    ProcessingError,
    PublishError,
    TransportError,
)
from dircrawl.queue.factory import create_consumer, open_publisher
from dircrawl.queue.null_queue import NullPublisher
from dircrawl.queue.protocol import DirectoryProcessor, Publisher
from dircrawl.queue.rabbitmq import PushConsumer, RabbitMQPublisher
from dircrawl.queue.redis_queue import RedisStreamPublisher
from dircrawl.queue.types import (
    SCHEMA_VERSION,
    CollectionInventoryMessage,
    DirectoryMessage,
    ProductMessage,
    QueueNames,
)

__all__ = [
    # Factory
    "create_consumer",
    "open_publisher",
    # Protocols & implementations
    "Publisher",
    "DirectoryProcessor",
    "RedisStreamPublisher",
    "RabbitMQPublisher",
    "NullPublisher",
    # Consumers
    "PollConsumer",
    "PushConsumer",
    "ConsumerState",
    # Delivery
    "DeliveryHandler",
    "Outcome",
    "RedeliveryPolicy",
    # Codec
    "encode",
    "decode",
    # Errors
    "CrawlerQueueError",
    "DecodeError",
    "ProcessingError",
    "PublishError",
    "TransportError",
    # Types
    "SCHEMA_VERSION",
    "DirectoryMessage",
    "ProductMessage",
    "CollectionInventoryMessage",
    "QueueNames",
]
