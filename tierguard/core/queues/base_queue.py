"""Background queue base class with a dedicated event loop.

Work that must never delay a request (ledger writes, analytics forwarding) is
handed to a queue whose worker thread runs its own persistent event loop and
its own database engine.
"""

import asyncio
import atexit
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Generic, Optional, TypeVar

from tierguard.core.patterns import ThreadSafeSingleton

logger = logging.getLogger(__name__)

# Event type parameter
T = TypeVar('T')

# Substrings marking a dropped database connection
_CONNECTION_LOST_MARKERS = ("closed", "lost", "reset")


class BackgroundQueue(Generic[T], ThreadSafeSingleton, ABC):
    """
    Abstract base for fire-and-forget event processing.

    ``enqueue()`` never blocks and never raises: the worker is started lazily,
    and events are dropped with a warning when the queue is full.

    Subclasses implement:
    - `_get_queue_name()`: name used for the worker thread and log lines
    - `_process_event(event)`: handle one event on the worker's loop

    Example:
        class LedgerQueue(BackgroundQueue[LedgerEvent]):
            def _get_queue_name(self) -> str:
                return "ledger-queue"

            async def _process_event(self, event: LedgerEvent) -> None:
                await recorder.record(event.user_id, event.operation)

        LedgerQueue.get_instance().enqueue(LedgerEvent(...))
    """

    def _initialize(self) -> None:
        """Initialize queue resources."""
        from ...config import get_settings

        self._max_size = get_settings().usage_queue_max_size
        self._queue: queue.Queue[Optional[T]] = queue.Queue(maxsize=self._max_size)
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event = threading.Event()
        self._started = False

        atexit.register(self.shutdown)

    def _cleanup(self) -> None:
        self.shutdown(wait=True, timeout=1.0)

    @abstractmethod
    def _get_queue_name(self) -> str:
        """Return the queue name for logging and thread naming."""

    @abstractmethod
    async def _process_event(self, event: T) -> None:
        """Process a single event from the queue.

        Args:
            event: The event to process

        Raises:
            Any exception - caught and logged by the worker loop
        """

    def start(self) -> None:
        """Start the worker thread if it is not already running."""
        if self._started:
            return

        self._shutdown_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=self._get_queue_name(),
            daemon=True,
        )
        self._thread.start()
        self._started = True
        logger.info(f"{self._get_queue_name()} started (max_size={self._max_size})")

    def _run_loop(self) -> None:
        """Worker thread body: own event loop until shutdown."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        try:
            self._loop.run_until_complete(self._process_events())
        except Exception as e:
            logger.error(f"{self._get_queue_name()} loop error: {e}")
        finally:
            try:
                self._loop.run_until_complete(self._close_db())
            except Exception as e:
                logger.warning(f"Error during {self._get_queue_name()} DB cleanup: {e}")
            self._loop.close()
            self._loop = None
            logger.info(f"{self._get_queue_name()} loop stopped")

    async def _process_events(self) -> None:
        """Drain the queue until a poison pill or shutdown."""
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            try:
                event = await loop.run_in_executor(
                    None, lambda: self._queue.get(timeout=1.0)
                )
            except queue.Empty:
                continue

            if event is None:
                break

            await self._handle(event)

    async def _handle(self, event: T) -> None:
        """Process one event, retrying once after a dropped DB connection."""
        try:
            await self._process_event(event)
            return
        except Exception as e:
            if not self._is_connection_lost(e):
                logger.warning(f"Failed to process {self._get_queue_name()} event: {e}")
                return
            logger.warning(f"{self._get_queue_name()} connection lost, reinitializing...")

        await self._close_db()
        try:
            await self._process_event(event)
        except Exception as retry_e:
            logger.warning(
                f"Failed to process {self._get_queue_name()} event after retry: {retry_e}"
            )

    @staticmethod
    def _is_connection_lost(error: Exception) -> bool:
        message = str(error).lower()
        return "connection" in message and any(m in message for m in _CONNECTION_LOST_MARKERS)

    async def _close_db(self) -> None:
        """Dispose this loop's database engine; the next session recreates it."""
        try:
            from ...db.connection import db
            await db.close()
        except Exception as e:
            logger.warning(f"Error closing {self._get_queue_name()} DB connections: {e}")

    def enqueue(self, event: T) -> bool:
        """Add an event without blocking.

        Args:
            event: The event to enqueue

        Returns:
            True if queued, False if the queue was full and the event dropped
        """
        if not self._started:
            self.start()

        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            logger.warning(f"{self._get_queue_name()} full, dropping event")
            return False

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Stop the worker.

        Args:
            wait: If True, join the worker thread
            timeout: Maximum seconds to wait for the join
        """
        if not self._started:
            return

        logger.info(f"Shutting down {self._get_queue_name()}...")
        self._shutdown_event.set()

        try:
            self._queue.put_nowait(None)
        except queue.Full:
            # Worker exits on the shutdown flag within one poll interval
            logger.debug(f"{self._get_queue_name()} full at shutdown, relying on flag")

        if wait and self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        self._started = False
        logger.info(f"{self._get_queue_name()} shutdown complete")

    @property
    def queue_size(self) -> int:
        """Number of events waiting."""
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        """Check if the worker thread is alive."""
        return self._started and self._thread is not None and self._thread.is_alive()
