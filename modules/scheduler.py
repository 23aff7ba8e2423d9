"""
Cycle trigger for cl-autoloop

ForceTicker fires on a fixed interval and can also be forced. Both paths
set the same pending flag, so ticks that arrive while a cycle is running
coalesce into a single follow-up cycle.
"""

import threading
import time
from typing import Optional


class SystemClock:
    """Wall clock in unix seconds."""

    def now(self) -> int:
        return int(time.time())


class ForceTicker:
    """Interval timer with a force path and a coalescing pending tick."""

    # How often wait_for_tick re-checks the shutdown event
    POLL_INTERVAL = 1.0

    def __init__(self, interval: int):
        self.interval = interval
        self._pending = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._timer_loop, name="autoloop-ticker", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.POLL_INTERVAL * 2)
            self._thread = None

    def force(self) -> None:
        """Request a cycle now."""
        self._pending.set()

    def pending(self) -> bool:
        return self._pending.is_set()

    def _timer_loop(self) -> None:
        while not self._stop.wait(self.interval):
            self._pending.set()

    def wait_for_tick(self, shutdown_event: threading.Event,
                      timeout: Optional[float] = None) -> bool:
        """
        Block until a tick is pending or shutdown is requested.

        Consumes the pending tick. Returns False on shutdown or timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not shutdown_event.is_set():
            wait = self.POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            if self._pending.wait(wait):
                if shutdown_event.is_set():
                    return False
                self._pending.clear()
                return True
        return False
