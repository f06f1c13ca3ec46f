"""
Periodic task runner.

Runs a callable on a fixed interval in a daemon thread. A tick that raises
is logged and the timer keeps going; stopping wakes the thread at once.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Fixed-interval timer backed by ``threading.Event.wait``."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], object],
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Started %s timer every %.0fs", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Stopped %s timer", self.name)

    def _loop(self) -> None:
        if self._run_immediately:
            self._tick()
        while not self._stop.wait(self.interval_seconds):
            self._tick()

    def _tick(self) -> None:
        self.ticks += 1
        try:
            self._func()
        except Exception:
            logger.exception("%s tick failed", self.name)
