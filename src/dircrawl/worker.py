"""Crawler worker process: runs N directory-queue consumers until told to stop.

Poll consumers run their own thread after start(). Push consumers are
driven by run(), so the worker gives each one a dedicated delivery thread.
SIGTERM / SIGINT trigger a graceful stop when the worker runs on the main
thread.
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any

from dircrawl.config import CrawlerSettings
from dircrawl.queue.consumer import ConsumerState, PollConsumer
from dircrawl.queue.factory import create_consumer
from dircrawl.queue.protocol import DirectoryProcessor
from dircrawl.queue.rabbitmq import PushConsumer
from dircrawl.queue.types import QueueNames

logger = logging.getLogger(__name__)


class CrawlerWorker:
    """Supervises the consumers of one worker process."""

    def __init__(
        self,
        settings: CrawlerSettings,
        processor: DirectoryProcessor,
        queues: QueueNames | None = None,
    ) -> None:
        self._settings = settings
        self._processor = processor
        self._queues = queues
        self._consumers: list[PollConsumer | PushConsumer] = []
        self._threads: list[threading.Thread] = []
        self._shutdown = threading.Event()
        self._original_sigterm: Any = None
        self._original_sigint: Any = None

    @property
    def consumers(self) -> list[PollConsumer | PushConsumer]:
        return list(self._consumers)

    def start(self) -> None:
        """Create and start every consumer.

        Raises:
            TransportError: If a consumer cannot attach to the broker. The
                consumers already started are stopped first.
        """
        try:
            for _ in range(self._settings.consumers):
                consumer = create_consumer(self._settings, self._processor, self._queues)
                consumer.start()
                self._consumers.append(consumer)

                if isinstance(consumer, PushConsumer):
                    thread = threading.Thread(
                        target=consumer.run,
                        daemon=True,
                        name=f"push-consumer-{consumer.name}",
                    )
                    thread.start()
                    self._threads.append(thread)
        except Exception:
            self.stop()
            self.join()
            raise

        logger.info(
            f"[Worker] Started {len(self._consumers)} {self._settings.broker} consumer(s)"
        )

    def stop(self) -> None:
        """Ask every consumer to stop."""
        self._shutdown.set()
        for consumer in self._consumers:
            consumer.stop()

    def join(self, timeout: float | None = None) -> None:
        """Wait for every consumer to finish."""
        for consumer in self._consumers:
            if isinstance(consumer, PollConsumer):
                consumer.join(timeout)
        for thread in self._threads:
            thread.join(timeout)

    def wait(self) -> None:
        """Block until stop() is called or a shutdown signal arrives, then join."""
        self._setup_signal_handlers()
        try:
            while not self._shutdown.wait(1.0):
                if self._consumers and all(c.state is ConsumerState.CLOSED for c in self._consumers):
                    logger.error("[Worker] All consumers have exited")
                    break
        finally:
            self._restore_signal_handlers()
        self.stop()
        self.join()
        logger.info("[Worker] Shutdown complete")

    def _setup_signal_handlers(self) -> None:
        """Set up graceful shutdown on SIGTERM/SIGINT.

        Only works in main thread - silently skips in worker threads.
        """
        if threading.current_thread() is not threading.main_thread():
            logger.debug("[Worker] Skipping signal handlers (not main thread)")
            return

        def handler(signum, frame):
            logger.info(f"[Worker] Received signal {signum}")
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, handler)
        self._original_sigint = signal.signal(signal.SIGINT, handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if threading.current_thread() is not threading.main_thread():
            return
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
