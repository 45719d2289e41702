"""Cancelable fixed-rate timer used for the companion-service retry loop."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTimer:
    """Call *function* every *interval* seconds on a daemon thread until cancelled.

    The first call happens *first_delay* seconds after :meth:`start`
    (immediately by default). Ticks are scheduled at a fixed rate relative to
    the start time; ticks that fall due while *function* is still running are
    dropped rather than replayed in a burst. An exception from *function* is
    logged and does not stop the timer.

    :meth:`cancel` may be called any number of times from any thread,
    including from *function* itself; only the first call has an effect.

    Args:
        interval: Seconds between ticks. Must be positive.
        function: Zero-argument callable run on each tick.
        first_delay: Seconds before the first tick.
        name: Thread name, for logs and debuggers.
    """

    def __init__(
        self,
        interval: float,
        function: Callable[[], None],
        first_delay: float = 0.0,
        name: Optional[str] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._interval = interval
        self._function = function
        self._first_delay = max(first_delay, 0.0)
        self._finished = threading.Event()
        self._cancel_lock = threading.Lock()
        self._cancelled = False
        self._ticks = 0
        self._thread = threading.Thread(
            target=self._run, name=name or "PeriodicTimer", daemon=True
        )

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def ticks(self) -> int:
        """Number of times *function* has been invoked."""
        return self._ticks

    @property
    def is_cancelled(self) -> bool:
        return self._finished.is_set()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> bool:
        """Stop the timer. Returns ``True`` only for the call that actually cancelled it."""
        with self._cancel_lock:
            if self._cancelled:
                return False
            self._cancelled = True
        self._finished.set()
        logger.debug("%s cancelled after %d tick(s)", self._thread.name, self._ticks)
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        next_run = time.monotonic() + self._first_delay
        while True:
            delay = max(0.0, next_run - time.monotonic())
            if self._finished.wait(delay):
                return
            self._ticks += 1
            try:
                self._function()
            except Exception:
                logger.exception("Periodic task %s raised", self._thread.name)
            next_run += self._interval
            now = time.monotonic()
            while next_run <= now:
                next_run += self._interval
