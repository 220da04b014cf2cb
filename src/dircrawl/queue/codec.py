"""JSON codec for queue messages.

encode() always succeeds for a constructed message. decode() is total for
well-formed input of the expected kind and raises DecodeError for anything
else: broken JSON or UTF-8, wrong field types, missing fields, or an
unsupported schema version.
"""

from __future__ import annotations

from typing import TypeVar

from pydantic import ValidationError

from dircrawl.queue.exceptions import DecodeError
from dircrawl.queue.types import QueueMessage, _QueueMessage

M = TypeVar("M", bound=_QueueMessage)


def encode(message: QueueMessage) -> str:
    """Serialize a message to its JSON wire form."""
    return message.model_dump_json(by_alias=True)


def decode(text: str | bytes, kind: type[M]) -> M:
    """Parse a JSON payload into a message of the given kind.

    Args:
        text: Raw payload as received from the broker.
        kind: Expected message class, e.g. DirectoryMessage.

    Returns:
        The decoded message.

    Raises:
        DecodeError: If the payload is not a valid message of that kind.
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(kind.__name__, f"not UTF-8 text ({e.reason})") from e

    try:
        return kind.model_validate_json(text)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise DecodeError(kind.__name__, errors) from e
