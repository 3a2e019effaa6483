"""
Fixed-interval send throttle.

Guarantees a minimum spacing between two consecutive sends, across batch
boundaries too. Waiting is done in short slices so a cancellation
predicate can interrupt it.
"""

import time
from typing import Callable, Optional

StopPredicate = Optional[Callable[[], bool]]


class SendThrottle:
    """
    Ticker that hands out one send slot per interval.

    clock and sleep are injectable so tests can drive time by hand.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep, poll_interval: float = 0.25):
        self.interval = max(0.0, float(interval))
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._last_slot = None

    def wait(self, should_stop: StopPredicate = None) -> bool:
        """
        Block until the next send slot is available.

        Returns False if should_stop() turned true first; no slot is
        consumed in that case.
        """
        if self._last_slot is None:
            deadline = self._clock()
        else:
            deadline = self._last_slot + self.interval
        if not self._sleep_until(deadline, should_stop):
            return False
        self._last_slot = self._clock()
        return True

    def pause(self, seconds: float, should_stop: StopPredicate = None) -> bool:
        """Sleep for seconds unless stopped. Used between batches."""
        return self._sleep_until(self._clock() + max(0.0, seconds), should_stop)

    def reset(self):
        self._last_slot = None

    def _sleep_until(self, deadline: float, should_stop: StopPredicate) -> bool:
        while True:
            if should_stop is not None and should_stop():
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            self._sleep(min(remaining, self.poll_interval))
