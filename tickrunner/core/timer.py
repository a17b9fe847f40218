from __future__ import annotations

import time
from typing import Callable, Optional


class Timer:
    """
    Wall-clock budget for one tick.

    The usable budget is `max_exec * bias / 100` seconds; the remaining
    share of `max_exec` is headroom for the step that is already running
    when the budget runs out.
    """

    def __init__(self, max_exec: float = 60, bias: float = 75, *, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self.max_exec = max(0.0, float(max_exec))
        self.bias = min(100.0, max(0.0, float(bias)))
        self.limit = self.max_exec * self.bias / 100.0
        self._start = self._clock()

    def get_running_time(self) -> float:
        return self._clock() - self._start

    def get_time_left(self) -> float:
        return self.limit - self.get_running_time()

    def expired(self) -> bool:
        return self.get_time_left() <= 0

    def sub_budget(self, bias: float) -> "Timer":
        """A timer limited to `bias` percent of the time this one has left."""
        return Timer(max(0.0, self.get_time_left()), bias, clock=self._clock)

    def reset(self) -> None:
        self._start = self._clock()
