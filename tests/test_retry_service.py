"""Tests for retry with backoff and the batch strategies."""
import asyncio

import pytest

from tests.fakes import RecordingSleep
from znote_related.exceptions import (
    AuthenticationError,
    InvalidRequestError,
    RateLimitError,
    ServiceUnavailableError,
)
from znote_related.services.retry_service import (
    RetryOptions,
    calculate_delay,
    execute_with_retry,
    is_retryable_error,
    process_batch,
    process_batches,
    split_batches,
    with_retry,
)


class Flaky:
    """Operation failing with the queued errors, then returning ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestCalculateDelay:
    def test_exponential_without_jitter(self):
        options = RetryOptions(base_delay_ms=1000, max_delay_ms=30000, jitter_factor=0.0)
        assert [calculate_delay(a, options) for a in range(4)] == [1000, 2000, 4000, 8000]

    def test_jitter_adds_up_to_factor(self):
        options = RetryOptions(base_delay_ms=1000, jitter_factor=0.2)
        assert calculate_delay(0, options, random_fn=lambda: 1.0) == pytest.approx(1200)
        assert calculate_delay(0, options, random_fn=lambda: 0.0) == pytest.approx(1000)

    def test_capped_at_max_delay(self):
        options = RetryOptions(base_delay_ms=1000, max_delay_ms=5000, jitter_factor=0.0)
        assert calculate_delay(10, options) == 5000

    def test_retry_after_takes_precedence(self):
        options = RetryOptions(base_delay_ms=1000, max_delay_ms=30000)
        assert calculate_delay(3, options, retry_after_ms=2000) == 2500

    def test_retry_after_is_capped(self):
        options = RetryOptions(max_delay_ms=1000)
        assert calculate_delay(0, options, retry_after_ms=5000) == 1000


class TestIsRetryableError:
    def test_provider_errors_use_flag(self):
        assert is_retryable_error(RateLimitError())
        assert is_retryable_error(ServiceUnavailableError())
        assert not is_retryable_error(AuthenticationError())
        assert not is_retryable_error(InvalidRequestError())

    def test_transport_errors(self):
        assert is_retryable_error(asyncio.TimeoutError())
        assert is_retryable_error(ConnectionResetError())

    def test_message_markers(self):
        assert is_retryable_error(RuntimeError("network unreachable"))
        assert is_retryable_error(RuntimeError("ECONNRESET"))
        assert not is_retryable_error(ValueError("bad value"))


@pytest.mark.anyio
class TestExecuteWithRetry:
    async def test_rate_limit_waits_retry_after_plus_buffer(self):
        sleep = RecordingSleep()
        operation = Flaky([RateLimitError(retry_after_ms=2000)])
        options = RetryOptions(max_retries=3, base_delay_ms=10, max_delay_ms=30000)

        assert await execute_with_retry(operation, options, sleep) == "ok"
        assert operation.calls == 2
        assert sleep.delays == [2.5]

    async def test_exponential_delays(self, fast_retry):
        sleep = RecordingSleep()
        operation = Flaky([ServiceUnavailableError(), ServiceUnavailableError()])
        assert await execute_with_retry(operation, fast_retry, sleep) == "ok"
        assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]

    async def test_non_retryable_raises_immediately(self, fast_retry):
        sleep = RecordingSleep()
        operation = Flaky([AuthenticationError()])
        with pytest.raises(AuthenticationError):
            await execute_with_retry(operation, fast_retry, sleep)
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_gives_up_after_max_retries(self, fast_retry):
        sleep = RecordingSleep()
        final = ServiceUnavailableError("third")
        operation = Flaky([ServiceUnavailableError(), ServiceUnavailableError(), final])
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await execute_with_retry(operation, fast_retry, sleep)
        assert exc_info.value is final
        assert operation.calls == 3

    async def test_on_retry_callback(self):
        seen = []
        options = RetryOptions(
            max_retries=1,
            base_delay_ms=100,
            jitter_factor=0.0,
            on_retry=lambda attempt, delay, error: seen.append((attempt, delay, type(error))),
        )
        await execute_with_retry(Flaky([ServiceUnavailableError()]), options, RecordingSleep())
        assert seen == [(1, 100, ServiceUnavailableError)]

    async def test_with_retry_wrapper(self, fast_retry):
        calls = []

        async def add(a, b):
            calls.append((a, b))
            if len(calls) == 1:
                raise ServiceUnavailableError()
            return a + b

        wrapped = with_retry(add, fast_retry, RecordingSleep())
        assert await wrapped(2, b=3) == 5
        assert calls == [(2, 3), (2, 3)]


@pytest.mark.anyio
class TestProcessBatch:
    async def test_per_item_failures_are_recorded(self, fast_retry):
        sleep = RecordingSleep()

        async def double(item):
            if item == 3:
                raise InvalidRequestError("bad item")
            return item * 2

        result = await process_batch(
            [1, 2, 3, 4, 5], double, batch_size=2, batch_delay_ms=500,
            retry_options=fast_retry, sleep=sleep,
        )
        assert result.successful == [2, 4, 8, 10]
        assert [item for item, _ in result.failed] == [3]
        assert result.total == 5
        # Delay after items 2 and 4, never after the last one
        assert sleep.delays == [0.5, 0.5]

    async def test_on_error_can_stop(self, fast_retry):
        async def fail(item):
            raise InvalidRequestError()

        result = await process_batch(
            [1, 2, 3], fail, batch_size=10, batch_delay_ms=0,
            retry_options=fast_retry, on_error=lambda error, item: False,
            sleep=RecordingSleep(),
        )
        assert [item for item, _ in result.failed] == [1]


def test_split_batches():
    assert [len(b) for b in split_batches(list(range(25)), 10)] == [10, 10, 5]
    with pytest.raises(ValueError):
        split_batches([1], 0)


@pytest.mark.anyio
class TestProcessBatches:
    async def test_failed_batch_does_not_abort_the_rest(self, fast_retry):
        sleep = RecordingSleep()
        progress = []

        async def process(batch):
            if batch[0] == 10:
                raise InvalidRequestError("batch two is broken")
            return [item * 10 for item in batch]

        result = await process_batches(
            list(range(25)), process, batch_size=10, batch_delay_ms=1000,
            retry_options=fast_retry,
            on_progress=lambda done, total: progress.append((done, total)),
            sleep=sleep,
        )
        assert len(result.results) == 2
        assert result.results[0] == [i * 10 for i in range(10)]
        assert result.results[1] == [i * 10 for i in range(20, 25)]
        assert [index for index, _ in result.errors] == [1]
        assert result.success_count == 15
        assert result.failure_count == 10
        assert result.processed == 25
        assert result.total == 25
        assert not result.cancelled
        assert progress == [(10, 25), (20, 25), (25, 25)]
        assert sleep.delays == [1.0, 1.0]

    async def test_failing_batch_is_retried_first(self, fast_retry):
        sleep = RecordingSleep()
        attempts = []

        async def process(batch):
            attempts.append(batch[0])
            if batch[0] == 0 and attempts.count(0) == 1:
                raise ServiceUnavailableError()
            return batch

        result = await process_batches(
            [0, 1, 2], process, batch_size=2, batch_delay_ms=0,
            retry_options=fast_retry, sleep=sleep,
        )
        assert attempts == [0, 0, 2]
        assert result.success_count == 3
        assert sleep.delays == [pytest.approx(0.1)]

    async def test_cancellation_between_batches(self, fast_retry):
        cancel = asyncio.Event()

        async def process(batch):
            cancel.set()
            return batch

        result = await process_batches(
            list(range(25)), process, batch_size=10, batch_delay_ms=0,
            retry_options=fast_retry, cancel_event=cancel, sleep=RecordingSleep(),
        )
        assert result.cancelled
        assert result.processed == 10
        assert result.success_count == 10
