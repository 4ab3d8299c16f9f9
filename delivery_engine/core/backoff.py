"""Error log backoff for loops that hit the same failure every tick."""

import time
from typing import Callable, Optional


class ErrorBackoff:
    """
    Calls the report function at most once per period, doubling the period
    on each report up to max_period. A success resets it.
    """

    def __init__(
        self,
        min_period: float = 1.0,
        max_period: float = 30 * 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_period = min_period
        self.max_period = max_period
        self._clock = clock
        self._period = min_period
        self._last_reported: Optional[float] = None

    def on_error(self, error: Exception, report: Callable[[Exception], None]) -> bool:
        """Returns True if the error was reported."""
        now = self._clock()
        if self._last_reported is not None and now - self._last_reported < self._period:
            return False

        report(error)
        if self._last_reported is not None:
            self._period = min(self._period * 2, self.max_period)
        self._last_reported = now
        return True

    def reset(self) -> None:
        self._period = self.min_period
        self._last_reported = None
