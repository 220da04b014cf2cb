"""Shared test fixtures.

FakeRedis and FakeAmqpBroker are in-memory doubles of the parts of the
redis-py stream API and the pika blocking API that the crawler uses, so
consumer behaviour can be tested without a live broker.
"""
from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field

import pika
import pika.exceptions
import pika.spec
import pytest
import redis

from dircrawl.queue.exceptions import ProcessingError
from dircrawl.queue.types import DirectoryMessage, ProductMessage


# ---------------------------------------------------------------------------
# Redis Streams double
# ---------------------------------------------------------------------------


@dataclass
class _PendingEntry:
    consumer: str
    delivered_at: float
    times_delivered: int = 1


@dataclass
class _Group:
    last_seq: int = 0
    pending: dict[str, _PendingEntry] = field(default_factory=dict)


def _seq(msg_id: str) -> int:
    return int(msg_id.split("-")[0])


def _id(msg_id) -> str:
    return msg_id.decode() if isinstance(msg_id, bytes) else msg_id


class FakeRedis:
    """Thread-safe in-memory stand-in for redis.Redis stream commands.

    Entry IDs are "<n>-0" from one counter, so they sort by insertion.
    Set ``errors[command] = exception`` to make a command fail. Like redis-py,
    replies are bytes unless decode_responses is set, in which case reading
    bytes that are not UTF-8 raises UnicodeDecodeError.
    """

    def __init__(self, decode_responses=True):
        self.decode_responses = decode_responses
        self._cond = threading.Condition()
        self._counter = 0
        self.streams: dict[str, dict[str, dict[str, str]]] = {}
        self.groups: dict[tuple[str, str], _Group] = {}
        self.errors: dict[str, Exception] = {}
        self.closed = False

    def _check(self, command: str) -> None:
        error = self.errors.get(command)
        if error is not None:
            raise error

    def _reply(self, value):
        if self.decode_responses:
            return value.decode("utf-8") if isinstance(value, bytes) else value
        return value.encode("utf-8") if isinstance(value, str) else value

    def _entry(self, msg_id, fields):
        return self._reply(msg_id), {self._reply(k): self._reply(v) for k, v in fields.items()}

    def _group(self, stream: str, group: str) -> _Group:
        try:
            return self.groups[(stream, group)]
        except KeyError:
            raise redis.exceptions.ResponseError(
                f"NOGROUP No such key '{stream}' or consumer group '{group}'"
            ) from None

    def ping(self):
        self._check("ping")
        return True

    def close(self):
        self.closed = True

    def xadd(self, name, fields, **kwargs):
        self._check("xadd")
        with self._cond:
            self._counter += 1
            msg_id = f"{self._counter}-0"
            self.streams.setdefault(name, {})[msg_id] = dict(fields)
            self._cond.notify_all()
        return self._reply(msg_id)

    def xlen(self, name):
        with self._cond:
            return len(self.streams.get(name, {}))

    def xgroup_create(self, name, groupname, id="$", mkstream=False):
        self._check("xgroup_create")
        with self._cond:
            if name not in self.streams:
                if not mkstream:
                    raise redis.exceptions.ResponseError("ERR The XGROUP subcommand requires the key to exist")
                self.streams[name] = {}
            if (name, groupname) in self.groups:
                raise redis.exceptions.ResponseError("BUSYGROUP Consumer Group name already exists")
            last_seq = 0 if id == "0" else self._counter
            self.groups[(name, groupname)] = _Group(last_seq=last_seq)
        return True

    def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        self._check("xreadgroup")
        [(stream, _cursor)] = streams.items()
        deadline = None if block == 0 else time.monotonic() + (block or 0) / 1000

        with self._cond:
            group = self._group(stream, groupname)
            while True:
                fresh = [
                    (msg_id, fields)
                    for msg_id, fields in self.streams.get(stream, {}).items()
                    if _seq(msg_id) > group.last_seq
                ][: count or None]
                if fresh:
                    now = time.monotonic()
                    for msg_id, _fields in fresh:
                        group.last_seq = _seq(msg_id)
                        group.pending[msg_id] = _PendingEntry(consumername, now)
                    return [[self._reply(stream), [self._entry(msg_id, fields) for msg_id, fields in fresh]]]

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return []
                self._cond.wait(remaining)

    def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None, justid=False):
        self._check("xautoclaim")
        with self._cond:
            group = self._group(name, groupname)
            now = time.monotonic()
            claimed, deleted = [], []
            for msg_id, entry in list(group.pending.items()):
                if _seq(msg_id) < _seq(start_id):
                    continue
                if (now - entry.delivered_at) * 1000 < min_idle_time:
                    continue
                fields = self.streams.get(name, {}).get(msg_id)
                if fields is None:
                    del group.pending[msg_id]
                    deleted.append(self._reply(msg_id))
                    continue
                entry.consumer = consumername
                entry.delivered_at = now
                entry.times_delivered += 1
                claimed.append(self._entry(msg_id, fields))
                if count and len(claimed) >= count:
                    break
            return [self._reply("0-0"), claimed, deleted]

    def xclaim(self, name, groupname, consumername, min_idle_time, message_ids, justid=False, **kwargs):
        self._check("xclaim")
        with self._cond:
            group = self._group(name, groupname)
            now = time.monotonic()
            claimed = []
            for msg_id in map(_id, message_ids):
                entry = group.pending.get(msg_id)
                if entry is None or (now - entry.delivered_at) * 1000 < min_idle_time:
                    continue
                entry.consumer = consumername
                entry.delivered_at = now
                if not justid:
                    entry.times_delivered += 1
                claimed.append(msg_id)
            if justid:
                return [self._reply(msg_id) for msg_id in claimed]
            return [self._entry(msg_id, self.streams[name][msg_id]) for msg_id in claimed]

    def xpending_range(self, name, groupname, min, max, count, consumername=None, idle=None):
        self._check("xpending_range")
        with self._cond:
            group = self._group(name, groupname)
            now = time.monotonic()
            return [
                {
                    "message_id": self._reply(msg_id),
                    "consumer": entry.consumer,
                    "time_since_delivered": int((now - entry.delivered_at) * 1000),
                    "times_delivered": entry.times_delivered,
                }
                for msg_id, entry in group.pending.items()
                if _seq(min) <= _seq(msg_id) <= _seq(max)
            ][:count]

    def xack(self, name, groupname, *ids):
        self._check("xack")
        with self._cond:
            group = self._group(name, groupname)
            return sum(1 for msg_id in map(_id, ids) if group.pending.pop(msg_id, None) is not None)

    def xdel(self, name, *ids):
        self._check("xdel")
        with self._cond:
            stream = self.streams.get(name, {})
            return sum(1 for msg_id in map(_id, ids) if stream.pop(msg_id, None) is not None)

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    # Test helpers

    def entries(self, name) -> list[tuple[str, dict[str, str]]]:
        with self._cond:
            return list(self.streams.get(name, {}).items())

    def pending_ids(self, name, groupname) -> list[str]:
        with self._cond:
            return list(self._group(name, groupname).pending)


class _FakePipeline:
    def __init__(self, client: FakeRedis):
        self._client = client
        self._commands = []

    def xack(self, *args):
        self._commands.append((self._client.xack, args))
        return self

    def xdel(self, *args):
        self._commands.append((self._client.xdel, args))
        return self

    def execute(self):
        self._client._check("execute")
        return [command(*args) for command, args in self._commands]


# ---------------------------------------------------------------------------
# RabbitMQ double
# ---------------------------------------------------------------------------


@dataclass
class FakeAmqpMessage:
    queue: str
    body: bytes
    properties: pika.BasicProperties
    redelivered: bool = False


@dataclass
class _Subscription:
    channel: FakeChannel
    queue: str
    callback: object
    consumer_tag: str


class FakeAmqpBroker:
    """In-memory broker behind FakeConnection / FakeChannel.

    Delivery is explicit: dispatch() pushes one message to a subscribed
    channel that has prefetch room, drain() repeats until nothing is left.
    Channels inside start_consuming() dispatch to themselves.

    Attributes:
        count_deliveries: Maintain the x-delivery-count header on requeue,
            like quorum queues do.
        publish_error: Raised from every basic_publish when set.
    """

    def __init__(self, count_deliveries: bool = False):
        self.cond = threading.Condition()
        self.queues: dict[str, deque[FakeAmqpMessage]] = {}
        self.durable: dict[str, bool] = {}
        self.subscriptions: list[_Subscription] = []
        self.connections: list[FakeConnection] = []
        self.acked: list[FakeAmqpMessage] = []
        self.count_deliveries = count_deliveries
        self.publish_error: Exception | None = None
        self._turn = 0

    def connect(self) -> FakeConnection:
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection

    def declare(self, queue: str, durable: bool) -> None:
        with self.cond:
            self.queues.setdefault(queue, deque())
            self.durable[queue] = durable

    def put(self, queue: str, body: bytes | str, properties: pika.BasicProperties | None = None) -> None:
        """Enqueue a message directly, bypassing any publisher."""
        if isinstance(body, str):
            body = body.encode("utf-8")
        with self.cond:
            self.queues.setdefault(queue, deque()).append(
                FakeAmqpMessage(queue, body, properties or pika.BasicProperties())
            )
            self.cond.notify_all()

    def publish(self, queue: str, body: bytes, properties, mandatory: bool) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        with self.cond:
            if queue not in self.queues:
                if mandatory:
                    raise pika.exceptions.UnroutableError([])
                return
        self.put(queue, body, properties)

    def depth(self, queue: str) -> int:
        with self.cond:
            return len(self.queues.get(queue, ()))

    def messages(self, queue: str) -> list[FakeAmqpMessage]:
        with self.cond:
            return list(self.queues.get(queue, ()))

    def subscribe(self, subscription: _Subscription) -> None:
        with self.cond:
            if subscription.queue not in self.queues:
                raise pika.exceptions.ChannelClosedByBroker(404, f"NOT_FOUND - no queue '{subscription.queue}'")
            self.subscriptions.append(subscription)

    def unsubscribe(self, channel: FakeChannel) -> None:
        with self.cond:
            self.subscriptions = [s for s in self.subscriptions if s.channel is not channel]

    def requeue(self, message: FakeAmqpMessage) -> None:
        with self.cond:
            message.redelivered = True
            if self.count_deliveries:
                properties = copy.copy(message.properties)
                headers = dict(properties.headers or {})
                headers["x-delivery-count"] = headers.get("x-delivery-count", 0) + 1
                properties.headers = headers
                message.properties = properties
            self.queues[message.queue].appendleft(message)
            self.cond.notify_all()

    def dispatch(self, channel: FakeChannel | None = None) -> bool:
        """Deliver one message. Returns False if no delivery was possible."""
        with self.cond:
            candidates = [
                s for s in self.subscriptions
                if (channel is None or s.channel is channel)
                and s.channel.is_open
                and s.channel.has_room()
                and self.queues.get(s.queue)
            ]
            if not candidates:
                return False
            subscription = candidates[self._turn % len(candidates)]
            self._turn += 1
            message = self.queues[subscription.queue].popleft()
            method = subscription.channel.track(subscription, message)

        subscription.callback(subscription.channel, method, message.properties, message.body)
        return True

    def drain(self, limit: int = 1000) -> int:
        delivered = 0
        while self.dispatch():
            delivered += 1
            assert delivered < limit, "messages keep coming back"
        return delivered


class FakeConnection:
    """Stand-in for pika.BlockingConnection."""

    def __init__(self, broker: FakeAmqpBroker):
        self.broker = broker
        self.is_open = True
        self.channels: list[FakeChannel] = []
        self.channel_error: Exception | None = None
        self.consume_error: Exception | None = None
        self._callbacks = []
        self._lock = threading.Lock()

    @property
    def is_closed(self):
        return not self.is_open

    def channel(self) -> FakeChannel:
        if self.channel_error is not None:
            raise self.channel_error
        if not self.is_open:
            raise pika.exceptions.ConnectionWrongStateError("Connection is closed")
        channel = FakeChannel(self)
        self.channels.append(channel)
        return channel

    def add_callback_threadsafe(self, callback) -> None:
        if not self.is_open:
            raise pika.exceptions.ConnectionWrongStateError("Connection is closed")
        with self._lock:
            self._callbacks.append(callback)
        with self.broker.cond:
            self.broker.cond.notify_all()

    def process_callbacks(self) -> None:
        with self._lock:
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def close(self) -> None:
        if not self.is_open:
            raise pika.exceptions.ConnectionWrongStateError("Connection is already closed")
        self.is_open = False
        for channel in self.channels:
            channel.release()


class FakeChannel:
    """Stand-in for pika's BlockingChannel."""

    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.broker = connection.broker
        self.is_open = True
        self.confirming = False
        self.prefetch_count = 0
        self.acked: list[int] = []
        self.rejected: list[tuple[int, bool]] = []
        self.unacked: dict[int, FakeAmqpMessage] = {}
        self._next_tag = 0
        self._consuming = False

    def has_room(self) -> bool:
        return not self.prefetch_count or len(self.unacked) < self.prefetch_count

    def track(self, subscription: _Subscription, message: FakeAmqpMessage):
        self._next_tag += 1
        self.unacked[self._next_tag] = message
        return pika.spec.Basic.Deliver(
            consumer_tag=subscription.consumer_tag,
            delivery_tag=self._next_tag,
            redelivered=message.redelivered,
            exchange="",
            routing_key=message.queue,
        )

    def confirm_delivery(self):
        self.confirming = True

    def queue_declare(self, queue, durable=False, **kwargs):
        self.broker.declare(queue, durable)

    def basic_qos(self, prefetch_size=0, prefetch_count=0, global_qos=False):
        self.prefetch_count = prefetch_count

    def basic_consume(self, queue, on_message_callback, auto_ack=False, **kwargs):
        assert not auto_ack
        tag = f"ctag-{id(self)}-{len(self.broker.subscriptions)}"
        self.broker.subscribe(_Subscription(self, queue, on_message_callback, tag))
        return tag

    def basic_publish(self, exchange, routing_key, body, properties=None, mandatory=False):
        assert exchange == ""
        self.broker.publish(routing_key, body, properties, mandatory)

    def basic_ack(self, delivery_tag=0, multiple=False):
        with self.broker.cond:
            message = self.unacked.pop(delivery_tag)
            self.acked.append(delivery_tag)
            self.broker.acked.append(message)
            self.broker.cond.notify_all()

    def basic_reject(self, delivery_tag, requeue=True):
        with self.broker.cond:
            message = self.unacked.pop(delivery_tag)
            self.rejected.append((delivery_tag, requeue))
            if requeue:
                self.broker.requeue(message)

    def start_consuming(self):
        if self.connection.consume_error is not None:
            raise self.connection.consume_error
        self._consuming = True
        while self._consuming and self.is_open:
            self.connection.process_callbacks()
            if not self._consuming:
                break
            if not self.broker.dispatch(self):
                with self.broker.cond:
                    self.broker.cond.wait(0.01)

    def stop_consuming(self, consumer_tag=None):
        self._consuming = False
        self.broker.unsubscribe(self)

    def release(self) -> None:
        """Channel closed: unacknowledged deliveries go back to their queue."""
        self.is_open = False
        self.broker.unsubscribe(self)
        with self.broker.cond:
            for tag in sorted(self.unacked, reverse=True):
                self.broker.requeue(self.unacked.pop(tag))


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


class RecordingProcessor:
    """DirectoryProcessor double.

    Args:
        tree: dir -> (subdirectory paths, product file paths) to publish.
        failures: dir -> number of calls that fail before one succeeds.
        always_fail: Dirs whose processing always fails.
    """

    def __init__(self, tree=None, failures=None, always_fail=()):
        self.tree = tree or {}
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail)
        self.calls: list[DirectoryMessage] = []
        self._lock = threading.Lock()

    @property
    def dirs(self) -> list[str]:
        return [item.dir for item in self.calls]

    def process(self, item, publisher):
        with self._lock:
            self.calls.append(item)
            remaining = self.failures.get(item.dir, 0)
            if remaining:
                self.failures[item.dir] = remaining - 1
        if remaining or item.dir in self.always_fail:
            raise ProcessingError(f"cannot read {item.dir}")

        subdirs, products = self.tree.get(item.dir, ((), ()))
        for subdir in subdirs:
            publisher.publish_directory(
                DirectoryMessage(job_id=item.job_id, dir=subdir, root=item.root_dir, depth=item.depth + 1, parent=item.dir)
            )
        for product in products:
            publisher.publish_product(ProductMessage(job_id=item.job_id, files=(product,)))


def wait_for(predicate, timeout: float = 5.0) -> bool:
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def raw_redis():
    """FakeRedis replying with bytes, as redis.from_url(..., decode_responses=False) does."""
    return FakeRedis(decode_responses=False)


@pytest.fixture
def amqp_broker():
    return FakeAmqpBroker()


@pytest.fixture
def make_processor():
    return RecordingProcessor


@pytest.fixture
def wait_until():
    return wait_for


@pytest.fixture
def crawl_tree(tmp_path):
    """A directory with 2 subdirectories and 3 product labels.

    root/
        .hidden/
        bundle.xml
        data/            (nested/, product_a.xml, collection_data_inventory.csv)
        document/
        notes.txt
        product_1.xml
        product_2.XML
    """
    root = tmp_path / "root"
    (root / "data" / "nested").mkdir(parents=True)
    (root / "document").mkdir()
    (root / ".hidden").mkdir()
    (root / "bundle.xml").write_text("<Product_Bundle/>")
    (root / "product_1.xml").write_text("<Product_Observational/>")
    (root / "product_2.XML").write_text("<Product_Observational/>")
    (root / "notes.txt").write_text("not a label")
    (root / "data" / "product_a.xml").write_text("<Product_Observational/>")
    (root / "data" / "collection_data_inventory.csv").write_text("P,urn:nasa:pds:a::1.0\n")
    return root


@pytest.fixture
def directory_item():
    return DirectoryMessage(
        job_id="job-1",
        node_name="PDS_TEST",
        dir="/archive/bundle",
        root="/archive/bundle",
    )


@pytest.fixture
def dircrawl_logger():
    """The package logger, with handlers and level restored after the test."""
    logger = logging.getLogger("dircrawl")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate
