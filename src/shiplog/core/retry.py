"""
Bounded exponential-backoff delivery of a single batch.

Attempt n (0-based) is preceded by a wait of 2^(n-1) * first_retry_interval,
so a permanently failing output sees max_retry + 1 attempts separated by
I, 2I, 4I, ... and then the batch is reported as exhausted.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from .exceptions import DeliveryError, RetryExhaustedError
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

OutputHandler = Callable[[List[Any]], Awaitable[Optional[bool]]]
SleepFunc = Callable[[float], Awaitable[Any]]


class RetryState(str, Enum):
    """Terminal states of a delivery sequence."""

    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class RetryOutcome:
    """Result of delivering one batch."""
    state: RetryState
    attempts: int
    delays_ms: List[int] = field(default_factory=list)
    error: Optional[RetryExhaustedError] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RetryState.SUCCEEDED


def backoff_delay_ms(attempt: int, first_retry_interval_ms: int) -> int:
    """Delay after the failed attempt numbered `attempt` (0-based)."""
    return (2 ** attempt) * first_retry_interval_ms


class RetryExecutor:
    """
    Delivers a batch through an output handler with exponential backoff.

    Attempts run sequentially in an explicit loop. An attempt fails when the
    handler raises or returns False.
    """

    def __init__(
        self,
        max_retry: int,
        first_retry_interval_ms: int,
        sleep: SleepFunc = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        if max_retry < 0:
            raise ValueError("max_retry must be >= 0")
        if first_retry_interval_ms < 0:
            raise ValueError("first_retry_interval_ms must be >= 0")

        self.max_retry = max_retry
        self.first_retry_interval_ms = first_retry_interval_ms
        self._sleep = sleep
        self.metrics = metrics

    async def execute(
        self,
        logs: Sequence[Any],
        handler: Callable[[], Optional[OutputHandler]],
    ) -> RetryOutcome:
        """
        Deliver logs, retrying on failure.

        Args:
            logs: Batch payloads in delivery order
            handler: Returns the output handler to use for each attempt

        Returns:
            RetryOutcome in SUCCEEDED or EXHAUSTED state
        """
        batch = list(logs)
        delays: List[int] = []
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retry + 1):
            if attempt > 0:
                delay_ms = backoff_delay_ms(attempt - 1, self.first_retry_interval_ms)
                delays.append(delay_ms)
                if self.metrics:
                    self.metrics.record_retry()
                await self._sleep(delay_ms / 1000)

            if self.metrics:
                self.metrics.record_attempt()

            try:
                await self._attempt(batch, handler())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    "Delivery attempt failed",
                    attempt=attempt + 1,
                    max_attempts=self.max_retry + 1,
                    batch_size=len(batch),
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue

            logger.debug("Batch delivered", attempt=attempt + 1, batch_size=len(batch))
            return RetryOutcome(state=RetryState.SUCCEEDED, attempts=attempt + 1, delays_ms=delays)

        error = RetryExhaustedError(
            attempts=self.max_retry + 1,
            batch_size=len(batch),
            last_error=last_error,
        )
        return RetryOutcome(
            state=RetryState.EXHAUSTED,
            attempts=self.max_retry + 1,
            delays_ms=delays,
            error=error,
        )

    async def _attempt(self, batch: List[Any], handler: Optional[OutputHandler]) -> None:
        if handler is None:
            raise DeliveryError("No output handler registered")

        # Each attempt gets its own list
        result = await handler(list(batch))
        if result is False:
            raise DeliveryError("Output handler reported failure", details={"batch_size": len(batch)})
