"""Command line interface for crawler workers.

Usage:
    dircrawl worker --broker redis --consumers 4
    dircrawl seed /data/archive --job-id my-job
    dircrawl scan /data/archive/bundle --json
"""

from __future__ import annotations

import json
import socket
import sys
import uuid
from pathlib import Path

import click

from dircrawl.config import BROKERS, CrawlerSettings
from dircrawl.logger import configure_logging
from dircrawl.proc.directory import FilesystemDirectoryProcessor
from dircrawl.queue.exceptions import CrawlerQueueError
from dircrawl.queue.factory import open_publisher
from dircrawl.queue.null_queue import NullPublisher
from dircrawl.queue.types import CollectionInventoryMessage, DirectoryMessage, ProductMessage
from dircrawl.worker import CrawlerWorker


def _settings(**overrides) -> CrawlerSettings:
    """Environment settings with CLI options (when given) on top."""
    try:
        settings = CrawlerSettings.from_env()
        values = {k: v for k, v in overrides.items() if v is not None}
        return CrawlerSettings(**{**settings.__dict__, **values})
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@click.group()
def main() -> None:
    """Distributed directory crawler over a message broker."""


@main.command()
@click.option("--broker", type=click.Choice(BROKERS), help="Broker transport (default: $CRAWLER_BROKER or redis)")
@click.option("--consumers", type=int, help="Consumers in this process (default: $CRAWLER_CONSUMERS or 1)")
@click.option("--max-deliveries", type=int, help="Deliveries before quarantine, 0 = unbounded")
@click.option("--max-depth", type=int, default=None, help="Do not descend deeper than this level")
@click.option("--verbosity", help="ALL, INFO, WARN or ERROR (default: $CRAWLER_LOG_LEVEL or INFO)")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Log file path")
def worker(
    broker: str | None,
    consumers: int | None,
    max_deliveries: int | None,
    max_depth: int | None,
    verbosity: str | None,
    log_file: str | None,
) -> None:
    """Consume directory messages until SIGINT/SIGTERM."""
    settings = _settings(
        broker=broker,
        consumers=consumers,
        max_deliveries=max_deliveries,
        log_level=verbosity,
        log_file=log_file,
    )
    log_path = configure_logging(settings.log_level, settings.log_file)
    click.echo(f"Logging to {log_path}", err=True)

    crawler = CrawlerWorker(settings, FilesystemDirectoryProcessor(max_depth=max_depth))
    try:
        crawler.start()
    except CrawlerQueueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    crawler.wait()


@main.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--job-id", default=None, help="Crawl job ID (default: random UUID)")
@click.option("--node", "node_name", default=None, help="Registry node name (default: hostname)")
@click.option("--overwrite", is_flag=True, help="Ask the harvester to overwrite existing products")
@click.option("--broker", type=click.Choice(BROKERS), help="Broker transport (default: $CRAWLER_BROKER or redis)")
def seed(directory: Path, job_id: str | None, node_name: str | None, overwrite: bool, broker: str | None) -> None:
    """Publish the root directory of a new crawl.

    DIRECTORY: Root of the tree to crawl.
    """
    settings = _settings(broker=broker)
    root = str(directory.resolve())
    item = DirectoryMessage(
        job_id=job_id or str(uuid.uuid4()),
        node_name=node_name or socket.gethostname(),
        overwrite=overwrite,
        dir=root,
        root=root,
    )

    try:
        with open_publisher(settings) as publisher:
            publisher.publish_directory(item)
    except CrawlerQueueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(item.job_id)


@main.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--max-depth", type=int, default=None, help="Do not list subdirectories past this level")
@click.option("--json", "json_output", is_flag=True, help="Print messages as JSON lines")
def scan(directory: Path, max_depth: int | None, json_output: bool) -> None:
    """Show what a crawler would publish for DIRECTORY, without a broker."""
    root = str(directory.resolve())
    item = DirectoryMessage(job_id="scan", dir=root, root=root)
    publisher = NullPublisher()

    try:
        FilesystemDirectoryProcessor(max_depth=max_depth).process(item, publisher)
    except CrawlerQueueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        for message in publisher.published:
            click.echo(json.dumps({"kind": type(message).__name__, **message.model_dump(by_alias=True)}))
        return

    for message in publisher.of_kind(DirectoryMessage):
        click.echo(f"dir         {message.dir}")
    for message in publisher.of_kind(CollectionInventoryMessage):
        click.echo(f"inventory   {message.inventory_file}")
    for message in publisher.of_kind(ProductMessage):
        click.echo(f"product     {message.files[0]}")


if __name__ == "__main__":
    main()
