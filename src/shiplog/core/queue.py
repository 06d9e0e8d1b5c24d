"""
Queue adapter contract and an in-memory implementation.

The shipper persists every log through a queue adapter before buffering it,
and removes items only once their batch has been delivered.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import structlog

logger = structlog.get_logger(__name__)


def new_item_id() -> str:
    """Generate an identity for a persisted log."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class QueueItem:
    """A persisted log paired with the identity used to remove it."""
    id: str
    data: Any
    created_at: float = field(default_factory=time.time)


class QueueAdapter(ABC):
    """
    Durable storage of pending logs.

    Implementations must:
    - return items from list() in original insertion order
    - treat remove() of unknown or already removed items as a no-op
    - keep pushed items across process restarts (durable adapters)
    """

    @abstractmethod
    async def push(self, log: Any) -> QueueItem:
        """Persist one log and return its handle."""

    @abstractmethod
    async def list(self) -> List[QueueItem]:
        """Return all not-yet-removed items in insertion order."""

    @abstractmethod
    async def remove(self, items: Sequence[QueueItem]) -> None:
        """Delete exactly the given items."""

    async def close(self) -> None:
        """Release resources held by the adapter."""


class MemoryQueue(QueueAdapter):
    """
    In-process queue adapter.

    Not durable: items are lost when the process exits.
    """

    def __init__(self) -> None:
        self._items: Dict[str, QueueItem] = {}
        self._lock = asyncio.Lock()

    async def push(self, log: Any) -> QueueItem:
        item = QueueItem(id=new_item_id(), data=log)
        async with self._lock:
            self._items[item.id] = item
        return item

    async def list(self) -> List[QueueItem]:
        async with self._lock:
            return list(self._items.values())

    async def remove(self, items: Sequence[QueueItem]) -> None:
        async with self._lock:
            for item in items:
                self._items.pop(item.id, None)
        logger.debug("Removed items from memory queue", count=len(items))

    def __len__(self) -> int:
        return len(self._items)
