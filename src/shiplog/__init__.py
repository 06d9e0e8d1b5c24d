"""
shiplog - client-side log shipping buffer

Filters, persists and buffers log events, then delivers them in bounded
batches to a pluggable output with exponential-backoff retries.
"""

__version__ = "0.1.0"

from .config import ShipperSettings, get_settings
from .core.exceptions import (
    DeliveryError,
    QueueError,
    RetryExhaustedError,
    ShiplogException,
    ShipperStateError,
)
from .core.masking import MaskingFilter
from .core.queue import MemoryQueue, QueueAdapter, QueueItem
from .core.shipper import FlushResult, Shipper, get_shipper
from .core.wal import FileQueue

__all__ = [
    "Shipper",
    "ShipperSettings",
    "FlushResult",
    "get_shipper",
    "get_settings",

    # Queue adapters
    "QueueAdapter",
    "QueueItem",
    "MemoryQueue",
    "FileQueue",

    # Filters
    "MaskingFilter",

    # Errors
    "ShiplogException",
    "QueueError",
    "DeliveryError",
    "RetryExhaustedError",
    "ShipperStateError",
]
