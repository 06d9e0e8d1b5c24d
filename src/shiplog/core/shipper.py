"""
Log shipper engine.

Wires the filter pipeline, queue adapter, buffer, flush scheduler and retry
executor together:

    send(log) -> filters -> queue.push -> buffer tail
    tick      -> buffer head (up to LOG_LIMIT) -> retry executor -> output
              -> queue.remove on success
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import structlog

from ..config import ShipperSettings, get_settings
from .buffer import LogBuffer
from .exceptions import QueueError, RetryExhaustedError, ShiplogException, ShipperStateError
from .filters import FilterPipeline, LogFilter
from .metrics import MetricsCollector
from .queue import QueueAdapter, QueueItem
from .retry import OutputHandler, RetryExecutor, SleepFunc
from .scheduler import FlushScheduler, FlushState
from .wal import FileQueue

logger = structlog.get_logger(__name__)

ErrorHandler = Callable[[ShiplogException], Any]


@dataclass
class FlushResult:
    """Result of one flush cycle."""
    success: bool
    logs_delivered: int = 0
    attempts: int = 0
    error_message: Optional[str] = None


@dataclass
class AbandonedBatch:
    """Batch that exhausted its retries; still persisted in the queue."""
    items: List[QueueItem]
    abandoned_at: float
    error: RetryExhaustedError


class Shipper:
    """
    Client-side log shipping buffer.

    Logs passed to send() are filtered, persisted through the queue adapter
    and buffered in memory. Every flush interval the oldest LOG_LIMIT logs are
    delivered to the output handler, retrying with exponential backoff.
    Delivered items are removed from the queue; a batch that exhausts its
    retries is dropped from the buffer but stays in the queue, so the next
    process start lists it again.
    """

    LOG_LIMIT = 10

    def __init__(
        self,
        settings: Optional[ShipperSettings] = None,
        queue: Optional[QueueAdapter] = None,
        metrics: Optional[MetricsCollector] = None,
        on_error: Optional[ErrorHandler] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.settings = settings if settings is not None else ShipperSettings()
        self.queue = queue if queue is not None else FileQueue(get_settings().queue)
        self.metrics = metrics
        self.on_error = on_error

        self.buffer = LogBuffer()
        self.filters = FilterPipeline()
        self._output: Optional[OutputHandler] = None
        self._abandoned: List[AbandonedBatch] = []
        self._started = False
        self._start_lock = asyncio.Lock()

        self._retry = RetryExecutor(
            max_retry=self.settings.max_retry,
            first_retry_interval_ms=self.settings.first_retry_interval_ms,
            sleep=sleep,
            metrics=metrics,
        )
        self._scheduler = FlushScheduler(
            flush=self._flush,
            interval_seconds=self.settings.flush_interval_seconds,
            overlap_policy=self.settings.overlap_policy,
            on_tick=self._on_tick,
            metrics=metrics,
        )

        logger.info(
            "Shipper initialized",
            flush_interval_ms=self.settings.flush_interval_ms,
            max_retry=self.settings.max_retry,
            first_retry_interval_ms=self.settings.first_retry_interval_ms,
            queue=type(self.queue).__name__
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    @property
    def flush_state(self) -> FlushState:
        return self._scheduler.state

    @property
    def buffer_size(self) -> int:
        return len(self.buffer)

    @property
    def abandoned_count(self) -> int:
        return sum(len(batch.items) for batch in self._abandoned)

    @property
    def output(self) -> Optional[OutputHandler]:
        return self._output

    def add_filter(self, log_filter: LogFilter) -> None:
        self.filters.add(log_filter)

    def apply_filters(self, log: Any) -> Any:
        return self.filters.apply(log)

    def add_output(self, handler: OutputHandler, replace: bool = False) -> None:
        """
        Register the output handler.

        Before start() the last registration wins. Once started, a new
        handler is only accepted with replace=True and takes effect from the
        next delivery attempt.
        """
        if not callable(handler):
            raise TypeError(f"output handler must be callable, got {type(handler).__name__}")

        if self._started and not replace:
            raise ShipperStateError(
                "Output handler already in use; pass replace=True to hot-swap it"
            )

        if self._output is not None:
            logger.info("Replacing output handler", hot_swap=self._started)
        self._output = handler

    async def start(self) -> None:
        """Recover pending logs, flush once, then flush every interval."""
        async with self._start_lock:
            if self._scheduler.running:
                return

            if self._output is None:
                raise ShipperStateError("Cannot start without an output handler")

            if not self.buffer.initialized:
                await self._init()

            self._started = True
            self._update_gauges()
            await self._scheduler.start(immediate=True)

    async def stop(self, drain: Optional[bool] = None) -> None:
        """
        Stop periodic flushing.

        Args:
            drain: Wait for an in-flight cycle (True) or cancel it and return
                its batch to the buffer head (False). Defaults to stop_policy.
        """
        if drain is None:
            drain = self.settings.stop_policy == "drain"

        await self._scheduler.stop(drain=drain)
        self._started = False
        self._update_gauges()

    async def send(self, log: Any) -> QueueItem:
        """Filter, persist and buffer one log."""
        log = self.apply_filters(log)

        item = await self.queue.push(log)
        self.buffer.append(item)

        if self.metrics:
            self.metrics.record_send()
            self._update_gauges()
        return item

    async def flush(self) -> FlushResult:
        """
        Run a flush cycle now, or join the one already in flight.

        Cancelling the caller does not cancel the cycle.
        """
        result = await asyncio.shield(self._scheduler.trigger())
        if result is None:
            return FlushResult(success=False, error_message="Flush cycle failed")
        return result

    def recover_abandoned(self) -> int:
        """Return every abandoned batch to the buffer head. Returns items moved."""
        return self._requeue_abandoned(self._abandoned)

    async def _init(self) -> None:
        try:
            items = await self.queue.list()
        except ShiplogException:
            raise
        except Exception as e:
            raise QueueError("Error listing queue", details={"error": str(e)}) from e

        merged = self.buffer.restore(items)
        logger.info("Buffer initialized from queue", recovered=len(items), merged=merged)

    async def _flush(self) -> FlushResult:
        items = self.buffer.take(self.LOG_LIMIT)
        if not items:
            return FlushResult(success=True)

        logs = [item.data for item in items]
        started = time.perf_counter()
        logger.debug("Flushing batch", batch_size=len(items), remaining=len(self.buffer))

        try:
            outcome = await self._retry.execute(logs, lambda: self._output)
        except asyncio.CancelledError:
            self.buffer.requeue(items)
            logger.warning("Flush aborted, batch returned to buffer", batch_size=len(items))
            raise
        finally:
            self._update_gauges()

        duration = time.perf_counter() - started

        if not outcome.succeeded:
            error = outcome.error or RetryExhaustedError(attempts=outcome.attempts, batch_size=len(items))
            self._abandon(items, error)
            if self.metrics:
                self.metrics.record_exhausted(len(items), duration)
            return FlushResult(
                success=False,
                attempts=outcome.attempts,
                error_message=str(error),
            )

        try:
            await self.queue.remove(items)
        except Exception as e:
            error = e if isinstance(e, ShiplogException) else QueueError(
                "Error removing delivered items", details={"error": str(e)}
            )
            logger.error(
                "Failed to remove delivered items from queue",
                batch_size=len(items),
                error=str(e)
            )
            self._report(error)
            return FlushResult(
                success=False,
                logs_delivered=len(items),
                attempts=outcome.attempts,
                error_message=str(error),
            )

        if self.metrics:
            self.metrics.record_delivery(len(items), duration)

        logger.debug("Flush completed", logs_delivered=len(items), attempts=outcome.attempts)
        return FlushResult(success=True, logs_delivered=len(items), attempts=outcome.attempts)

    def _abandon(self, items: List[QueueItem], error: RetryExhaustedError) -> None:
        self._abandoned.append(AbandonedBatch(items=items, abandoned_at=time.monotonic(), error=error))
        self._update_gauges()

        logger.error(
            "Batch abandoned after exhausting retries",
            batch_size=len(items),
            attempts=error.attempts,
            last_error=error.details.get("last_error")
        )
        self._report(error)

    def _report(self, error: ShiplogException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error("Error handler raised", error=str(e), exc_info=True)

    def _on_tick(self) -> None:
        interval_ms = self.settings.abandoned_retry_interval_ms
        if interval_ms <= 0 or not self._abandoned:
            return

        now = time.monotonic()
        due = [batch for batch in self._abandoned if (now - batch.abandoned_at) * 1000 >= interval_ms]
        self._requeue_abandoned(due)

    def _requeue_abandoned(self, batches: List[AbandonedBatch]) -> int:
        if not batches:
            return 0

        batches = list(batches)
        moved = 0
        # Newest first, so the oldest batch ends up at the head
        for batch in reversed(batches):
            self.buffer.requeue(batch.items)
            moved += len(batch.items)
        moved_ids = {id(batch) for batch in batches}
        self._abandoned = [batch for batch in self._abandoned if id(batch) not in moved_ids]
        self._update_gauges()

        logger.info("Abandoned batches returned to buffer", batches=len(batches), items=moved)
        return moved

    def _update_gauges(self) -> None:
        if self.metrics:
            self.metrics.update_buffer_metrics(len(self.buffer), self.abandoned_count)


# Global shipper instance
_shipper: Optional[Shipper] = None


def get_shipper() -> Shipper:
    """Get or create the global shipper instance."""
    global _shipper

    if _shipper is None:
        settings = get_settings()
        _shipper = Shipper(settings.shipper, queue=FileQueue(settings.queue))

    return _shipper
