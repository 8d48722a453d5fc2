"""
Layer 3 — Timeout Watchdog
Fires the no-candidate timeout from a timer thread, outside the frame loop.
"""
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TimeoutWatchdog:
    """
    Deadline timer rearmed by the frame loop.

    Rearming only moves the deadline forward; a single threading.Timer is
    kept alive and reschedules itself until the deadline really passes, then
    calls on_expire exactly once per arming.
    """

    def __init__(
        self,
        timeout_seconds: float,
        on_expire: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout_seconds = timeout_seconds
        self.on_expire = on_expire
        self.clock = clock

        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._deadline: Optional[float] = None

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._deadline is not None

    def arm(self):
        """Start the countdown, or push the deadline forward if already running."""
        with self._lock:
            self._deadline = self.clock() + self.timeout_seconds
            if self._timer is None:
                self._schedule(self.timeout_seconds)

    def cancel(self):
        """Stop the countdown without firing."""
        with self._lock:
            self._deadline = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self, delay: float):
        # Caller holds the lock
        self._timer = threading.Timer(max(delay, 0.0), self._fire)
        self._timer.daemon = True
        self._timer.start()

    def _fire(self):
        with self._lock:
            self._timer = None
            if self._deadline is None:
                return
            remaining = self._deadline - self.clock()
            if remaining > 0:
                self._schedule(remaining)
                return
            self._deadline = None

        logger.debug(f"Watchdog expired after {self.timeout_seconds}s")
        self.on_expire()
