"""Fan-in of the change streams produced by all monitors."""

import queue
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .models import Change


class ChangeSource(ABC):
    """Anything the checkpoint and change queue can pull changes from."""

    @abstractmethod
    def get_next_change(self) -> Optional[Change]:
        """Return the next available change without blocking, or None."""


class ChangeAggregator(ChangeSource):
    """
    Bounded FIFO shared by all monitors.

    Changes from one monitor keep their relative order; changes from
    different monitors interleave in arrival order.
    """

    def __init__(self, capacity: int = 100, poll_interval: float = 0.1):
        """
        Initialize the aggregator.

        Args:
            capacity: Maximum number of buffered changes
            poll_interval: How often a blocked producer re-checks its stop event
        """
        self.capacity = capacity
        self.poll_interval = poll_interval
        self._queue: "queue.Queue[Change]" = queue.Queue(maxsize=capacity)

    def add(self, change: Change, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Append a change, waiting while the buffer is full.

        Args:
            change: Change to append
            stop_event: Abandon the wait once this is set

        Returns:
            True if the change was added, False if stopped while full
        """
        while True:
            try:
                self._queue.put(change, timeout=self.poll_interval)
                return True
            except queue.Full:
                if stop_event is not None and stop_event.is_set():
                    return False

    def get_next_change(self) -> Optional[Change]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def clear(self) -> int:
        """
        Drop all buffered changes.

        Returns:
            Number of changes dropped
        """
        dropped = 0
        while self.get_next_change() is not None:
            dropped += 1
        return dropped

    def __len__(self) -> int:
        return self._queue.qsize()
