"""
Single-flight guard for trading cycles.

At most one cycle runs at a time. A tick that arrives while a cycle is still
in flight is skipped, not queued.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class SingleFlight:
    def __init__(self, name: str = "cycle"):
        self.name = name
        self._lock = threading.Lock()
        self.skipped = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def try_enter(self) -> Iterator[bool]:
        """
        Yields True when the caller holds the guard, False when another run is in flight.

        Usage:
            with guard.try_enter() as entered:
                if not entered:
                    return skipped
                ...
        """
        acquired = self._lock.acquire(blocking=False)
        if not acquired:
            self.skipped += 1
            logger.warning("%s still in flight; skipping this tick (%d skipped so far)", self.name, self.skipped)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()

    def wait_idle(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for an in-flight run to finish."""
        if not self._lock.acquire(timeout=max(timeout, 0.0)):
            return False
        self._lock.release()
        return True
