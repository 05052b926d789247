"""
MxL Periodic Flusher
Background thread that flushes the queue on a fixed interval, then enforces
the storage limit and purges uploaded records.

After consecutive failed flushes the wait doubles, capped at max_backoff,
and resets on the first success. Records themselves are never dropped for
failing; only storage-limit eviction removes pending records.
"""

import logging
import threading
from typing import Optional

from mxl.client.queue import DurableQueue, FlushResult

logger = logging.getLogger(__name__)


class PeriodicFlusher:

    def __init__(self, queue: DurableQueue, interval_seconds: float = 30.0, max_backoff_seconds: float = 1800.0):
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max(max_backoff_seconds, interval_seconds)
        self.consecutive_failures = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def next_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.interval_seconds
        return min(self.interval_seconds * (2 ** self.consecutive_failures), self.max_backoff_seconds)

    def tick(self) -> FlushResult:
        """One cycle: flush, enforce storage limits, purge uploaded."""
        result = self.queue.flush()
        if result.error is not None:
            self.consecutive_failures += 1
        elif result.attempted:
            self.consecutive_failures = 0

        try:
            self.queue.enforce_storage_limits()
            self.queue.purge_uploaded()
        except Exception as e:
            logger.error(f"Queue housekeeping failed: {e}")
        return result

    def _loop(self) -> None:
        while not self._stop.wait(self.next_delay()):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Periodic flush failed: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="mxl-flusher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
