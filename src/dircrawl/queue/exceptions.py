"""Error taxonomy for crawler queue operations.

Consumers decide a message's fate from the error class:
- DecodeError: the payload can never become valid, drop it.
- ProcessingError: the payload is fine but handling failed, retry it.
- TransportError / PublishError: the broker connection failed.
"""

from __future__ import annotations

__all__ = [
    "CrawlerQueueError",
    "DecodeError",
    "ProcessingError",
    "PublishError",
    "TransportError",
]


class CrawlerQueueError(Exception):
    """Base exception for all crawler queue errors."""


class TransportError(CrawlerQueueError):
    """Connection or channel failure while talking to the broker."""


class PublishError(TransportError):
    """A message could not be handed over to the broker.

    Publishes are never retried internally; the caller decides whether
    re-deriving and re-sending the message is safe.
    """

    def __init__(self, queue: str, message: str) -> None:
        super().__init__(f"Failed to publish to '{queue}': {message}")
        self.queue = queue


class DecodeError(CrawlerQueueError):
    """Payload is not a well-formed message of the expected kind."""

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"Invalid {kind} payload: {reason}")
        self.kind = kind
        self.reason = reason


class ProcessingError(CrawlerQueueError):
    """A well-formed message could not be processed."""
