"""Capability protocols shared by every broker transport.

Processing logic depends only on these protocols, never on the broker in
use. Each consumer owns a Publisher bound to its own broker session.
"""

from typing import Protocol, runtime_checkable

from dircrawl.queue.types import CollectionInventoryMessage, DirectoryMessage, ProductMessage


@runtime_checkable
class Publisher(Protocol):
    """Protocol for outbound message publishing.

    Implementations send each kind to its own durable queue with persistent
    delivery and raise PublishError on transport failure. Instances are not
    safe for concurrent use from several threads.
    """

    def publish_directory(self, item: DirectoryMessage) -> None:
        """Publish a directory work item to the (self-feeding) directory queue."""
        ...

    def publish_product(self, item: ProductMessage) -> None:
        """Publish a discovered product to the product queue."""
        ...

    def publish_collection_inventory(self, item: CollectionInventoryMessage) -> None:
        """Publish a collection inventory entry to the collection queue."""
        ...


@runtime_checkable
class DirectoryProcessor(Protocol):
    """Protocol for directory work item handlers.

    process() may run more than once for the same item (at-least-once
    delivery), so it must be idempotent. Raising any exception marks the
    delivery as failed and makes it eligible for retry.
    """

    def process(self, item: DirectoryMessage, publisher: Publisher) -> None:
        """Inspect one directory, publishing derived messages before returning."""
        ...
