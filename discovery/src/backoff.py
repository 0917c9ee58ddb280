from __future__ import annotations

import copy
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class Cancelled(Exception):
    """Raised when a stop was requested while an operation was blocked or in flight.

    Kept separate from API errors so callers can tell "shutting down" from "failed".
    """


@dataclass
class Backoff:
    """Exponential backoff parameters with a mutable step cursor.

    ``step()`` returns the current interval (plus up to ``jitter * interval`` of random
    jitter) and advances the cursor by ``factor``.  Once ``steps`` is exhausted, or the
    interval exceeds ``cap``, further calls keep returning the saturated interval instead of
    failing.
    """

    duration: float
    factor: float = 1.0
    jitter: float = 0.0
    steps: int = 1
    cap: float = 0.0

    def _jittered(self, duration: float) -> float:
        if self.jitter <= 0:
            return duration
        return duration + random.random() * self.jitter * duration  # noqa: S311

    def step(self) -> float:
        if self.steps < 1:
            return self._jittered(self.duration)

        self.steps -= 1
        duration = self.duration
        if self.factor != 0:
            self.duration = self.duration * self.factor
            if self.cap > 0 and self.duration > self.cap:
                self.duration = self.cap
                self.steps = 0
        return self._jittered(duration)


def forever_watch_backoff() -> Backoff:
    """Backoff for watches that reconnect forever.

    Starts at 250 ms and grows by 1.5x for 20 steps (~14 min) before saturating.
    """
    return Backoff(duration=0.25, factor=1.5, jitter=0.1, steps=20)


def retry_forever(
    stop_event: threading.Event,
    backoff: Backoff,
    operation: Callable[[threading.Event], bool | None],
) -> None:
    """Run *operation* repeatedly with exponential backoff until *stop_event* is set.

    Invocations are strictly sequential.  When the operation returns a truthy value the
    run is considered healthy and the backoff restarts from its initial interval.

    Never returns normally: raises :class:`Cancelled` once a stop is requested, either
    before an invocation or during the inter-retry sleep.
    """
    current = copy.copy(backoff)
    while True:
        if stop_event.is_set():
            raise Cancelled("stop requested")

        healthy = operation(stop_event)
        if healthy:
            current = copy.copy(backoff)

        delay = current.step()
        LOGGER.debug("Retrying operation in %.2fs", delay)
        if stop_event.wait(timeout=delay):
            raise Cancelled("stop requested")


class Sometimes:
    """Run a callable at most once per ``interval`` seconds; calls in between are dropped.

    The first call always runs.  The decision is taken under a lock but the callable runs
    outside it, so a concurrent caller is dropped rather than blocked.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self._clock = clock
        self._last: float | None = None
        self._lock = threading.Lock()

    def do(self, fn: Callable[[], None]) -> bool:
        """Run *fn* if the interval has elapsed.  Returns True when it ran."""
        with self._lock:
            now = self._clock()
            if self._last is not None and now - self._last < self.interval:
                return False
            self._last = now
        fn()
        return True
