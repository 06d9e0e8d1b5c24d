"""
Periodic flush scheduler.

Fires a flush cycle every interval on a wall-clock schedule and keeps at most
one cycle in flight.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

OVERLAP_SKIP = "skip"
OVERLAP_COALESCE = "coalesce"


class FlushState(str, Enum):
    """Whether a flush cycle is currently running."""

    IDLE = "idle"
    FLUSHING = "flushing"


class FlushScheduler:
    """
    Timer-driven trigger for flush cycles.

    Features:
    - Ticks fire every interval regardless of in-flight delivery work
    - A tick arriving while FLUSHING is skipped, or coalesced into one
      extra cycle run right after the current one
    - Explicit stop that drains or aborts the in-flight cycle
    """

    def __init__(
        self,
        flush: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        overlap_policy: str = OVERLAP_SKIP,
        on_tick: Optional[Callable[[], None]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if overlap_policy not in (OVERLAP_SKIP, OVERLAP_COALESCE):
            raise ValueError(f"Unknown overlap policy: {overlap_policy}")

        self._flush = flush
        self.interval = interval_seconds
        self.overlap_policy = overlap_policy
        self._on_tick = on_tick
        self.metrics = metrics

        self.state = FlushState.IDLE
        self._timer: Optional[asyncio.Task[None]] = None
        self._cycle: Optional[asyncio.Task[Any]] = None
        self._pending = False
        self._running = False
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, immediate: bool = True) -> None:
        """Arm the repeating timer, optionally flushing right away."""
        if self._running:
            return

        self._running = True
        if immediate:
            self.trigger()
        self._timer = asyncio.create_task(self._run_timer_loop())

        logger.info(
            "Flush scheduler started",
            interval_seconds=self.interval,
            overlap_policy=self.overlap_policy
        )

    async def stop(self, drain: bool = True) -> None:
        """Cancel the timer, then wait for or cancel the in-flight cycle."""
        was_running = self._running
        self._running = False

        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        cycle = self._cycle
        if cycle is not None and not cycle.done():
            if drain:
                logger.info("Draining in-flight flush cycle")
                await asyncio.wait([cycle])
            else:
                logger.info("Aborting in-flight flush cycle")
                cycle.cancel()
                try:
                    await cycle
                except asyncio.CancelledError:
                    pass

        if was_running:
            logger.info("Flush scheduler stopped", ticks=self.ticks, skipped_ticks=self.skipped_ticks)

    def trigger(self) -> "asyncio.Task[Any]":
        """
        Start a flush cycle unless one is already running.

        Returns:
            The task of the cycle that will cover this trigger
        """
        if self.state is FlushState.FLUSHING and self._cycle is not None:
            self.skipped_ticks += 1
            if self.overlap_policy == OVERLAP_COALESCE:
                self._pending = True
            if self.metrics:
                self.metrics.record_skipped_tick(self.overlap_policy)
            logger.debug("Flush already in flight", policy=self.overlap_policy)
            return self._cycle

        self.state = FlushState.FLUSHING
        self._cycle = asyncio.create_task(self._run_cycle())
        return self._cycle

    async def _run_cycle(self) -> Any:
        result = None
        try:
            result = await self._flush()
            while self._pending:
                self._pending = False
                result = await self._flush()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Flush cycle error", error=str(e), error_type=type(e).__name__, exc_info=True)
        finally:
            self._pending = False
            self.state = FlushState.IDLE
        return result

    async def _run_timer_loop(self) -> None:
        """Main timer loop."""
        while self._running:
            await asyncio.sleep(self.interval)
            self.ticks += 1

            if self._on_tick:
                try:
                    self._on_tick()
                except Exception as e:
                    logger.error("Tick hook error", error=str(e), exc_info=True)

            self.trigger()
