"""
Tests for the retry executor.

Tests attempt counts and exponential backoff delays.
"""

import pytest

from conftest import RecordingOutput, RecordingSleep
from shiplog.core.exceptions import DeliveryError, RetryExhaustedError
from shiplog.core.retry import RetryExecutor, RetryState, backoff_delay_ms


class TestBackoff:
    """Test backoff delay calculation."""

    def test_delay_doubles_each_attempt(self):
        assert [backoff_delay_ms(n, 1000) for n in range(4)] == [1000, 2000, 4000, 8000]

    def test_zero_interval(self):
        assert backoff_delay_ms(5, 0) == 0


class TestRetryExecutor:
    """Test delivery attempts against succeeding and failing outputs."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        sleep = RecordingSleep()
        output = RecordingOutput()
        executor = RetryExecutor(max_retry=5, first_retry_interval_ms=1000, sleep=sleep)

        outcome = await executor.execute([1, 2], lambda: output)

        assert outcome.state is RetryState.SUCCEEDED
        assert outcome.attempts == 1
        assert sleep.delays == []
        assert output.delivered == [[1, 2]]

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_succeed(self):
        sleep = RecordingSleep()
        output = RecordingOutput(fail_times=2)
        executor = RetryExecutor(max_retry=5, first_retry_interval_ms=1000, sleep=sleep)

        outcome = await executor.execute(["a"], lambda: output)

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert outcome.delays_ms == [1000, 2000]
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_failure_exhausts_after_max_retry_plus_one(self):
        sleep = RecordingSleep()
        output = RecordingOutput(always_fail=True)
        executor = RetryExecutor(max_retry=3, first_retry_interval_ms=100, sleep=sleep)

        outcome = await executor.execute(["a", "b"], lambda: output)

        assert outcome.state is RetryState.EXHAUSTED
        assert len(output.calls) == 4
        assert outcome.delays_ms == [100, 200, 400]
        assert sleep.delays == [0.1, 0.2, 0.4]
        assert isinstance(outcome.error, RetryExhaustedError)
        assert outcome.error.attempts == 4
        assert outcome.error.batch_size == 2
        assert isinstance(outcome.error.last_error, DeliveryError)

    @pytest.mark.asyncio
    async def test_max_retry_zero_means_single_attempt(self):
        sleep = RecordingSleep()
        output = RecordingOutput(always_fail=True)
        executor = RetryExecutor(max_retry=0, first_retry_interval_ms=1000, sleep=sleep)

        outcome = await executor.execute(["a"], lambda: output)

        assert outcome.state is RetryState.EXHAUSTED
        assert len(output.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_false_return_counts_as_failure(self):
        calls = []

        async def handler(logs):
            calls.append(logs)
            return len(calls) > 1

        executor = RetryExecutor(max_retry=2, first_retry_interval_ms=10, sleep=RecordingSleep())

        outcome = await executor.execute(["a"], lambda: handler)

        assert outcome.succeeded
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_missing_handler_exhausts(self):
        executor = RetryExecutor(max_retry=1, first_retry_interval_ms=10, sleep=RecordingSleep())

        outcome = await executor.execute(["a"], lambda: None)

        assert outcome.state is RetryState.EXHAUSTED
        assert isinstance(outcome.error.last_error, DeliveryError)

    @pytest.mark.asyncio
    async def test_handler_looked_up_per_attempt(self):
        broken = RecordingOutput(always_fail=True)
        healthy = RecordingOutput()
        handlers = iter([broken, healthy])
        executor = RetryExecutor(max_retry=1, first_retry_interval_ms=10, sleep=RecordingSleep())

        outcome = await executor.execute(["a"], lambda: next(handlers))

        assert outcome.succeeded
        assert healthy.delivered == [["a"]]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_original_batch(self):
        seen = []

        async def mutating(logs):
            seen.append(list(logs))
            logs.clear()
            raise DeliveryError("nope")

        executor = RetryExecutor(max_retry=1, first_retry_interval_ms=0, sleep=RecordingSleep())

        await executor.execute(["a", "b"], lambda: mutating)

        assert seen == [["a", "b"], ["a", "b"]]

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RetryExecutor(max_retry=-1, first_retry_interval_ms=0)
        with pytest.raises(ValueError):
            RetryExecutor(max_retry=0, first_retry_interval_ms=-5)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, metrics):
        executor = RetryExecutor(
            max_retry=2, first_retry_interval_ms=10, sleep=RecordingSleep(), metrics=metrics
        )

        await executor.execute(["a"], lambda: RecordingOutput(always_fail=True))

        registry = metrics.registry
        assert registry.get_sample_value("shiplog_delivery_attempts_total") == 3
        assert registry.get_sample_value("shiplog_delivery_retries_total") == 2
