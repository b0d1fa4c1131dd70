"""Fixed-capacity ring buffer that keeps the most recent items."""

from __future__ import annotations

from collections import deque
from typing import Generic, Iterator, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Holds up to ``capacity`` items; once full, each push overwrites the oldest."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"ring buffer capacity must be positive, got {capacity}")
        self._items: deque[T] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        maxlen = self._items.maxlen
        assert maxlen is not None
        return maxlen

    @property
    def full(self) -> bool:
        return len(self._items) == self.capacity

    def push(self, value: T) -> None:
        """Store ``value``, dropping the oldest item if the buffer is full."""
        self._items.append(value)

    def __iter__(self) -> Iterator[T]:
        """Iterate from the oldest stored item to the newest."""
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)