"""Canonical message schema types for the crawler queues.

Defines the messages flowing between crawler workers and the harvest side:
- DirectoryMessage: a directory to inspect (consumed and produced by crawlers)
- ProductMessage: discovered product label files (produced only)
- CollectionInventoryMessage: a collection inventory file (produced only)

Wire field names are camelCase, Python attribute names are snake_case.
Every payload carries ``schemaVersion`` so that consumers can reject
messages written by a newer, incompatible producer.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1

DIRS_QUEUE = "harvest.dirs"
PRODUCTS_QUEUE = "harvest.products"
COLLECTIONS_QUEUE = "harvest.collections"
QUARANTINE_QUEUE = "harvest.dirs.quarantine"


class _QueueMessage(BaseModel):
    """Immutable, self-describing queue payload."""

    model_config = ConfigDict(
        frozen=True,
        strict=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    schema_version: int = SCHEMA_VERSION
    job_id: str = Field(min_length=1)
    node_name: str = ""
    overwrite: bool = False

    @field_validator("schema_version")
    @classmethod
    def _check_schema_version(cls, value: int) -> int:
        if value < 1 or value > SCHEMA_VERSION:
            raise ValueError(f"unsupported schema version {value} (supported: 1..{SCHEMA_VERSION})")
        return value


class DirectoryMessage(_QueueMessage):
    """A directory to inspect, plus the crawl context it was found in."""

    dir: str = Field(min_length=1)
    root: str | None = None
    depth: int = Field(default=0, ge=0)
    parent: str | None = None

    @property
    def root_dir(self) -> str:
        """Root directory of the crawl this item belongs to."""
        return self.root or self.dir


class ProductMessage(_QueueMessage):
    """Product label files discovered while inspecting a directory."""

    files: tuple[str, ...] = Field(min_length=1)


class CollectionInventoryMessage(_QueueMessage):
    """A collection inventory file discovered while inspecting a directory."""

    inventory_file: str = Field(min_length=1)
    collection_lidvid: str | None = None


QueueMessage = DirectoryMessage | ProductMessage | CollectionInventoryMessage


@dataclass(frozen=True)
class QueueNames:
    """Names of the durable queues shared by every crawler and harvester.

    ``dirs`` is the self-feeding work queue: consumers drain it and their
    publishers feed it with subdirectories.
    """

    dirs: str = DIRS_QUEUE
    products: str = PRODUCTS_QUEUE
    collections: str = COLLECTIONS_QUEUE
    quarantine: str = QUARANTINE_QUEUE

    def all(self) -> tuple[str, ...]:
        return (self.dirs, self.products, self.collections, self.quarantine)
