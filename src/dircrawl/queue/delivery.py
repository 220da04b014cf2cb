"""Transport-independent handling of one directory-queue delivery.

Both consumer models run every delivery through DeliveryHandler.handle(),
which returns an Outcome. Each transport translates the outcome into its
own mechanism:

    Outcome   Poll consumer (Redis)      Push consumer (RabbitMQ)
    ACK       XACK + XDEL                basic_ack
    DROP      XACK + XDEL                basic_ack
    RETRY     leave pending              basic_reject(requeue=True)

A RETRY on a delivery that has exhausted the RedeliveryPolicy is moved to
the quarantine queue and acknowledged instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from dircrawl.queue.codec import decode
from dircrawl.queue.exceptions import DecodeError
from dircrawl.queue.protocol import DirectoryProcessor, Publisher
from dircrawl.queue.types import DirectoryMessage

logger = logging.getLogger(__name__)

DEFAULT_MAX_DELIVERIES = 5


class Outcome(Enum):
    """What the broker should do with a delivery once handling is over."""

    ACK = "ack"
    """Processed successfully, remove from the queue."""

    RETRY = "retry"
    """Well-formed but processing failed, make it eligible for redelivery."""

    DROP = "drop"
    """Malformed, can never succeed, remove from the queue."""


@dataclass(frozen=True)
class RedeliveryPolicy:
    """Bound on how many times a failing message is delivered.

    Attributes:
        max_deliveries: Deliveries after which a failing message is
            quarantined. None retries forever.
    """

    max_deliveries: int | None = DEFAULT_MAX_DELIVERIES

    def __post_init__(self) -> None:
        if self.max_deliveries is not None and self.max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1 or None")

    def exhausted(self, deliveries: int) -> bool:
        """True if a message delivered this many times must not be retried."""
        return self.max_deliveries is not None and deliveries >= self.max_deliveries


class DeliveryHandler:
    """Decodes a directory-queue payload and hands it to the processor."""

    def __init__(self, processor: DirectoryProcessor, publisher: Publisher) -> None:
        self._processor = processor
        self._publisher = publisher
        self.last_error: Exception | None = None

    @property
    def publisher(self) -> Publisher:
        return self._publisher

    def handle(self, body: str | bytes, message_id: str = "?") -> Outcome:
        """Process one delivery.

        Args:
            body: Raw payload.
            message_id: Broker identity of the delivery, for logging.

        Returns:
            The outcome the transport must apply. On RETRY, last_error holds
            the processor's exception.
        """
        self.last_error = None

        try:
            item = decode(body, DirectoryMessage)
        except DecodeError as e:
            logger.error(f"[Delivery] Dropping invalid message {message_id}: {e}")
            self.last_error = e
            return Outcome.DROP

        try:
            self._processor.process(item, self._publisher)
        except Exception as e:
            logger.error(f"[Delivery] Could not process '{item.dir}' ({message_id}): {e}")
            self.last_error = e
            return Outcome.RETRY

        logger.debug(f"[Delivery] Processed '{item.dir}' ({message_id})")
        return Outcome.ACK


def failure_details(error: Exception | None, deliveries: int, consumer: str) -> dict[str, str]:
    """Metadata attached to a quarantined message."""
    return {
        "error_type": type(error).__name__ if error else "",
        "error_message": str(error) if error else "",
        "deliveries": str(deliveries),
        "consumer": consumer,
    }
