"""Time sources measured in integer nanoseconds."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """A source of simulation time, in nanoseconds."""

    @abstractmethod
    def now(self) -> int:
        """Return the current time in nanoseconds."""


class RealtimeClock(Clock):
    """Monotonic clock whose origin is the first reading taken in the process."""

    _origin: int | None = None
    _lock = threading.Lock()

    def now(self) -> int:
        reading = time.monotonic_ns()
        cls = RealtimeClock
        if cls._origin is None:
            with cls._lock:
                if cls._origin is None:
                    cls._origin = reading
        return max(0, reading - cls._origin)