from __future__ import annotations

import logging
import threading
from collections import deque

from .message import Message

_LOGGER = logging.getLogger("focus.tracker.delivery_queue")


class DeliveryQueue:
    """Ordered buffer of outbound messages awaiting an open connection.

    FIFO, never reordered or deduplicated. Survives session replacement.
    ``capacity=None`` keeps every message; a positive capacity drops the oldest
    entry on overflow and counts it in ``dropped``. A message returned with
    ``push_front`` keeps its place at the head.
    """

    def __init__(self, *, capacity: int | None = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive or None")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._items: deque[Message] = deque()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __bool__(self) -> bool:
        return len(self) > 0

    def append(self, message: Message) -> None:
        with self._lock:
            self._items.append(message)
            self._trim_locked()

    def push_front(self, message: Message) -> None:
        """Return a message whose transmission failed to the head of the queue."""
        with self._lock:
            self._items.appendleft(message)
            self._trim_locked(keep_head=True)

    def pop(self) -> Message | None:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def snapshot(self) -> list[Message]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _trim_locked(self, *, keep_head: bool = False) -> None:
        if self.capacity is None:
            return
        while len(self._items) > self.capacity:
            if keep_head and len(self._items) > 1:
                # A requeued message is never the one dropped.
                lost = self._items[1]
                del self._items[1]
            else:
                lost = self._items.popleft()
            self.dropped += 1
            _LOGGER.warning(
                "delivery queue full (capacity=%s), dropped oldest %s tab=%s",
                self.capacity,
                lost.kind.value,
                lost.tab_id,
            )
