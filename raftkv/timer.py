"""Election and heartbeat timing: a resettable deadline timer and timeout helpers."""

from __future__ import annotations

import random
import threading
import time

HEARTBEAT_TIMEOUT_MS = 155
MIN_ELECT_TIMEOUT_MS = 600
MAX_ELECT_TIMEOUT_MS = 1000


def random_elect_timeout(low: int, high: int) -> int:
    """Return a random election timeout in milliseconds, between low and high inclusive."""
    if low > high:
        raise ValueError(f"lower bound {low} is greater than upper bound {high}")
    return random.randint(low, high)


class Timer:
    """A deadline timer that blocks waiters until the latest deadline passes.

    A fresh timer has a deadline in the past, so the first wait() returns
    at once. reset() moves the deadline; waiters already blocked follow the
    new deadline. stop() releases every waiter, and wait() then returns False.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._deadline = time.monotonic()
        self._stopped = False

    def reset(self, delay: float) -> None:
        """Set the deadline to `delay` seconds from now."""
        with self._cond:
            self._deadline = time.monotonic() + delay
            self._cond.notify_all()

    def wait(self) -> bool:
        """Block until the deadline passes (True) or the timer is stopped (False)."""
        with self._cond:
            while not self._stopped:
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    return True
                self._cond.wait(remaining)
            return False

    def stop(self) -> None:
        """Stop the timer; current and future waits return False."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    @property
    def stopped(self) -> bool:
        return self._stopped