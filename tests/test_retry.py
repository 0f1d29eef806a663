"""Tests for the resilient call wrapper."""

import asyncio

import pytest

from research_desk.config import Settings
from research_desk.errors import OperationAborted, ProviderError
from research_desk.retry import ResilientCall, call_with_retry, compute_delay


class FakeSleep:
    """Records requested pauses without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def no_jitter(low, high):
    return 0.0


class FlakyOperation:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ProviderError("fmp", f"fail {self.calls}", 503)
        return self.result


class TestComputeDelay:
    """Test backoff computation."""

    def test_first_pause_is_base_plus_jitter(self):
        assert compute_delay(0, 1.0, 30.0, lambda a, b: 0.5) == 1.5

    def test_exponential_growth(self):
        assert compute_delay(1, 1.0, 30.0, no_jitter) == 2.0
        assert compute_delay(2, 1.0, 30.0, no_jitter) == 4.0

    def test_capped_at_max_delay(self):
        assert compute_delay(10, 1.0, 30.0, no_jitter) == 30.0

    def test_jitter_bounded_by_base(self):
        assert compute_delay(0, 1.0, 30.0, lambda a, b: 5.0) == 2.0
        assert compute_delay(0, 1.0, 30.0, lambda a, b: -3.0) == 1.0


class TestCallWithRetry:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        op = FlakyOperation(failures=0)
        sleep = FakeSleep()

        result = await call_with_retry(op, max_attempts=3, sleep=sleep, jitter=no_jitter)

        assert result == "ok"
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self):
        """With three attempts allowed, two failures still end in success."""
        op = FlakyOperation(failures=2)
        sleep = FakeSleep()

        result = await call_with_retry(op, max_attempts=3, base_delay=1.0, sleep=sleep, jitter=no_jitter)

        assert result == "ok"
        assert op.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_reraised_when_exhausted(self):
        op = FlakyOperation(failures=5)
        sleep = FakeSleep()

        with pytest.raises(ProviderError) as exc_info:
            await call_with_retry(op, max_attempts=3, sleep=sleep, jitter=no_jitter)

        assert "fail 3" in str(exc_info.value)
        assert op.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        calls = []

        async def op():
            calls.append(1)
            raise ProviderError("fmp", "bad request", 400)

        with pytest.raises(ProviderError):
            await call_with_retry(
                op, max_attempts=3, sleep=FakeSleep(), jitter=no_jitter,
                retry_on=lambda e: isinstance(e, ProviderError) and e.retryable,
            )

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_abort_before_first_attempt(self):
        op = FlakyOperation(failures=0)
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(OperationAborted):
            await call_with_retry(op, abort=abort, sleep=FakeSleep(), jitter=no_jitter)

        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_abort_during_attempt(self):
        abort = asyncio.Event()

        async def slow():
            abort.set()
            await asyncio.sleep(10)
            return "late"

        with pytest.raises(OperationAborted):
            await call_with_retry(slow, abort=abort, sleep=FakeSleep(), jitter=no_jitter)

    @pytest.mark.asyncio
    async def test_abort_during_backoff(self):
        abort = asyncio.Event()
        op = FlakyOperation(failures=5)

        async def sleep(delay):
            abort.set()
            await asyncio.sleep(10)

        with pytest.raises(OperationAborted):
            await call_with_retry(op, max_attempts=3, abort=abort, sleep=sleep, jitter=no_jitter)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_abort_raised_by_operation_is_not_retried(self):
        calls = []

        async def op():
            calls.append(1)
            raise OperationAborted("stop")

        with pytest.raises(OperationAborted):
            await call_with_retry(op, max_attempts=3, sleep=FakeSleep(), jitter=no_jitter)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await call_with_retry(FlakyOperation(0), max_attempts=0)


class TestResilientCall:
    """Test the reusable retry policy."""

    def test_invalid_delays_rejected(self):
        with pytest.raises(ValueError):
            ResilientCall(base_delay=5.0, max_delay=1.0)

    def test_from_settings(self):
        settings = Settings(retry_max_attempts=5, retry_base_delay=0.5, retry_max_delay=10.0)
        policy = ResilientCall.from_settings(settings)
        assert policy.max_attempts == 5

    @pytest.mark.asyncio
    async def test_per_call_attempt_override(self):
        sleep = FakeSleep()
        policy = ResilientCall(max_attempts=5, sleep=sleep, jitter=no_jitter)
        op = FlakyOperation(failures=5)

        with pytest.raises(ProviderError):
            await policy(op, description="test", max_attempts=2)

        assert op.calls == 2
