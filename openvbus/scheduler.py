"""Thread-safe queue of callbacks ordered by due time."""

from __future__ import annotations

import heapq
import itertools
import threading
from typing import Callable

from openvbus.clock import Clock


class Scheduler:
    """Runs posted callbacks once the simulation time reaches their due time."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._heap: list[tuple[int, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def post(self, t: int, fn: Callable[[], None]) -> None:
        """Queue ``fn`` to run at time ``t`` (nanoseconds)."""
        with self._lock:
            heapq.heappush(self._heap, (t, next(self._seq), fn))

    def _take(self, tmax: int | None) -> list[Callable[[], None]]:
        ready = []
        with self._lock:
            while self._heap and (tmax is None or self._heap[0][0] <= tmax):
                ready.append(heapq.heappop(self._heap)[2])
        return ready

    def run_until(self, tmax: int) -> int:
        """Run every callback due at or before ``tmax``; return how many ran."""
        ready = self._take(tmax)
        for fn in ready:
            fn()
        return len(ready)

    def run(self) -> int:
        """Run every callback queued so far; return how many ran."""
        ready = self._take(None)
        for fn in ready:
            fn()
        return len(ready)

    def now(self) -> int:
        """Current time of the underlying clock."""
        return self._clock.now()

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)