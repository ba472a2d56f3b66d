"""Exponential backoff bounded by total elapsed time, and a retry helper."""

import logging
import random
import time

from iptables_tailer.errors import PermanentError

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Delays grow by `multiplier` from `initial_interval`, capped at `max_interval`.

    next_backoff() returns None once more than `max_elapsed` seconds have
    passed since the last reset().
    """

    def __init__(
        self,
        initial_interval: float,
        max_elapsed: float,
        multiplier: float = 2.0,
        max_interval: float = 60.0,
        randomization_factor: float = 0.0,
        clock=time.monotonic,
    ):
        self.initial_interval = initial_interval
        self.max_elapsed = max_elapsed
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.randomization_factor = randomization_factor
        self._clock = clock
        self.reset()

    def reset(self):
        self._current = self.initial_interval
        self._start = self._clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    def next_backoff(self) -> float | None:
        if self.elapsed > self.max_elapsed:
            return None
        delay = self._current
        if self.randomization_factor:
            spread = delay * self.randomization_factor
            delay = random.uniform(delay - spread, delay + spread)
        self._current = min(self._current * self.multiplier, self.max_interval)
        return delay


def retry_notify(operation, backoff: ExponentialBackoff, notify=None, sleep=time.sleep):
    """Call operation() until it succeeds, backing off between attempts.

    notify(error, delay) is called before each sleep. PermanentError is
    re-raised at once; the last error is re-raised when the backoff gives up.
    """
    while True:
        try:
            return operation()
        except PermanentError:
            raise
        except Exception as e:
            delay = backoff.next_backoff()
            if delay is None:
                raise
            if notify is not None:
                notify(e, delay)
            sleep(delay)
