"""
In-memory FIFO mirror of persisted, not-yet-delivered queue items.
"""

from collections import deque
from typing import Deque, List, Optional, Sequence

import structlog

from .queue import QueueItem

logger = structlog.get_logger(__name__)


class LogBuffer:
    """
    Ordered buffer of queue items: appended at the tail, taken from the head.

    The buffer stays uninitialized until restore() is called with the queue
    adapter's listing. Items appended before that are held aside and merged
    into the restored buffer, skipping any the listing already contains.

    All methods are synchronous, so each mutation is atomic with respect to
    other coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._items: Optional[Deque[QueueItem]] = None
        self._early: List[QueueItem] = []

    @property
    def initialized(self) -> bool:
        return self._items is not None

    def restore(self, items: Sequence[QueueItem]) -> int:
        """Initialize from a queue listing. Returns the number of early items merged."""
        self._items = deque(items)
        known = {item.id for item in items}
        merged = 0
        for item in self._early:
            if item.id not in known:
                self._items.append(item)
                known.add(item.id)
                merged += 1
        self._early = []

        logger.debug("Buffer restored", recovered=len(items), merged=merged)
        return merged

    def append(self, item: QueueItem) -> None:
        if self._items is None:
            self._early.append(item)
        else:
            self._items.append(item)

    def take(self, limit: int) -> List[QueueItem]:
        """Remove and return up to limit items from the head, oldest first."""
        if not self._items or limit <= 0:
            return []
        count = min(limit, len(self._items))
        return [self._items.popleft() for _ in range(count)]

    def requeue(self, items: Sequence[QueueItem]) -> None:
        """Put items back at the head, keeping their original order."""
        if not items:
            return
        if self._items is None:
            self._early[:0] = items
        else:
            self._items.extendleft(reversed(items))

    def snapshot(self) -> List[QueueItem]:
        if self._items is None:
            return list(self._early)
        return list(self._items)

    def __len__(self) -> int:
        if self._items is None:
            return len(self._early)
        return len(self._items)
