"""Filesystem directory processor.

Inspects one directory per DirectoryMessage and publishes:
- a DirectoryMessage per subdirectory (fed back into the directory queue)
- a CollectionInventoryMessage per collection inventory file
- a ProductMessage per product label file

Only reads the filesystem, so running it twice for the same item publishes
the same messages again and has no other effect.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field

from dircrawl.queue.exceptions import ProcessingError
from dircrawl.queue.protocol import Publisher
from dircrawl.queue.types import CollectionInventoryMessage, DirectoryMessage, ProductMessage

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_PATTERNS = ("*.xml",)
DEFAULT_INVENTORY_PATTERNS = ("collection*.csv", "*inventory*.csv")


@dataclass
class ScanResult:
    """Entries of one directory, classified and sorted by name."""

    subdirs: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    inventories: list[str] = field(default_factory=list)
    skipped: int = 0


def _matches(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, p.lower()) for p in patterns)


class FilesystemDirectoryProcessor:
    """Walks one directory level and publishes what it finds."""

    def __init__(
        self,
        product_patterns: Sequence[str] = DEFAULT_PRODUCT_PATTERNS,
        inventory_patterns: Sequence[str] = DEFAULT_INVENTORY_PATTERNS,
        max_depth: int | None = None,
        include_hidden: bool = False,
    ) -> None:
        """Initialize processor.

        Args:
            product_patterns: Glob patterns of product label files.
            inventory_patterns: Glob patterns of collection inventory files,
                checked before product patterns.
            max_depth: Deepest level to descend to (seed is 0), None for no limit.
            include_hidden: Whether to follow/publish dot-prefixed entries.
        """
        self.product_patterns = tuple(product_patterns)
        self.inventory_patterns = tuple(inventory_patterns)
        self.max_depth = max_depth
        self.include_hidden = include_hidden

    def scan(self, path: str) -> ScanResult:
        """List and classify the entries of a directory.

        Raises:
            ProcessingError: If the directory cannot be listed.
        """
        result = ScanResult()
        try:
            with os.scandir(path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise ProcessingError(f"Cannot list directory '{path}': {e}") from e

        for entry in entries:
            if entry.name.startswith(".") and not self.include_hidden:
                result.skipped += 1
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)  # no symlink loops
                is_file = entry.is_file()
            except OSError as e:
                logger.warning(f"[DirectoryProcessor] Cannot stat '{entry.path}': {e}")
                result.skipped += 1
                continue

            if is_dir:
                result.subdirs.append(entry.path)
            elif is_file and _matches(entry.name, self.inventory_patterns):
                result.inventories.append(entry.path)
            elif is_file and _matches(entry.name, self.product_patterns):
                result.products.append(entry.path)
            else:
                result.skipped += 1
        return result

    def process(self, item: DirectoryMessage, publisher: Publisher) -> None:
        """Publish the subdirectories and files of item.dir."""
        result = self.scan(item.dir)

        descend = self.max_depth is None or item.depth < self.max_depth
        if result.subdirs and not descend:
            logger.debug(f"[DirectoryProcessor] Max depth reached at '{item.dir}', not descending")

        if descend:
            for subdir in result.subdirs:
                publisher.publish_directory(
                    DirectoryMessage(
                        job_id=item.job_id,
                        node_name=item.node_name,
                        overwrite=item.overwrite,
                        dir=subdir,
                        root=item.root_dir,
                        depth=item.depth + 1,
                        parent=item.dir,
                    )
                )

        for inventory in result.inventories:
            publisher.publish_collection_inventory(
                CollectionInventoryMessage(
                    job_id=item.job_id,
                    node_name=item.node_name,
                    overwrite=item.overwrite,
                    inventory_file=inventory,
                )
            )

        for product in result.products:
            publisher.publish_product(
                ProductMessage(
                    job_id=item.job_id,
                    node_name=item.node_name,
                    overwrite=item.overwrite,
                    files=(product,),
                )
            )

        logger.info(
            f"[DirectoryProcessor] {item.dir}: {len(result.subdirs) if descend else 0} dirs, "
            f"{len(result.products)} products, {len(result.inventories)} inventories"
        )
