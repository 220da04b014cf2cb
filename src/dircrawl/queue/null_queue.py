"""NullPublisher implementation for broker-less runs.

`dircrawl scan` runs a processor against a directory without any broker.
NullPublisher satisfies the Publisher protocol, keeps what would have been
published so it can be reported, and sends nothing anywhere.
"""

from __future__ import annotations

import logging

from dircrawl.queue.types import (
    CollectionInventoryMessage,
    DirectoryMessage,
    ProductMessage,
    QueueMessage,
)

logger = logging.getLogger(__name__)


class NullPublisher:
    """No-op publisher that records messages instead of sending them."""

    def __init__(self) -> None:
        self.published: list[QueueMessage] = []

    def publish_directory(self, item: DirectoryMessage) -> None:
        self._record(item)

    def publish_product(self, item: ProductMessage) -> None:
        self._record(item)

    def publish_collection_inventory(self, item: CollectionInventoryMessage) -> None:
        self._record(item)

    def _record(self, item: QueueMessage) -> None:
        logger.debug(f"[NullPublisher] Discarding {type(item).__name__}")
        self.published.append(item)

    def of_kind(self, kind: type) -> list[QueueMessage]:
        """Recorded messages of one kind, in publish order."""
        return [m for m in self.published if isinstance(m, kind)]
