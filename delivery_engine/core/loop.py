# delivery_engine/core/loop.py
"""Fixed-interval background loop."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """
    Runs a tick function on its own daemon thread every `interval` seconds.

    A tick that raises is logged and the loop keeps going: every unit of
    work is safe to retry on the next tick.
    """

    def __init__(self, name: str, tick: Callable[[], None], interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self.interval = interval
        self._tick = tick
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Start the loop thread."""
        if self._thread is not None:
            raise RuntimeError(f"Loop {self.name} already started")

        logger.info(f"[{self.name}] 🚀 Starting loop (interval {self.interval}s)")
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop the loop and wait for the current tick to finish."""
        logger.info(f"[{self.name}] Stopping loop")
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        try:
            self._tick()
        except Exception as e:
            logger.error(f"[{self.name}] Error in loop: {e}", exc_info=True)

    def _run_loop(self):
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)
