"""Retry with exponential backoff, plus two batch strategies built on it.

Provider calls are retried only when the failure is retryable (rate
limits, timeouts, 5xx). A server-supplied retry-after hint takes
precedence over the exponential formula.
"""
import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from znote_related.exceptions import ProviderError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Added to a server retry-after hint
RETRY_AFTER_BUFFER_MS = 500

SleepFn = Callable[[float], Awaitable[Any]]

_RETRYABLE_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "rate",
    "429",
    "503",
    "network",
    "econnreset",
    "connection reset",
    "etimedout",
)


@dataclass
class RetryOptions:
    """Retry configuration.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay_ms: Delay before the first retry, doubled on each further one.
        max_delay_ms: Cap on any single delay.
        jitter_factor: Up to this fraction of the delay is added at random.
        on_retry: Called with (attempt, delay_ms, error) before each sleep.
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    jitter_factor: float = 0.2
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None


def calculate_delay(
    attempt: int,
    options: RetryOptions,
    retry_after_ms: Optional[float] = None,
    random_fn: Callable[[], float] = random.random,
) -> float:
    """Delay in milliseconds before retry number ``attempt + 1``.

    With a positive retry-after hint: ``min(hint + 500, max_delay_ms)``.
    Otherwise ``base * 2**attempt`` plus jitter, capped at ``max_delay_ms``.
    """
    if retry_after_ms is not None and retry_after_ms > 0:
        return min(retry_after_ms + RETRY_AFTER_BUFFER_MS, options.max_delay_ms)

    exponential = options.base_delay_ms * (2 ** attempt)
    jitter = exponential * options.jitter_factor * random_fn()
    return min(exponential + jitter, options.max_delay_ms)


def is_retryable_error(error: BaseException) -> bool:
    """Whether repeating the failed call may succeed."""
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGE_MARKERS)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or retries are exhausted.

    Non-retryable errors and the error of the final attempt are re-raised
    unchanged. Cancellation is never retried.
    """
    opts = options or RetryOptions()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as error:
            if attempt >= opts.max_retries or not is_retryable_error(error):
                raise

            retry_after = error.retry_after_ms if isinstance(error, RateLimitError) else None
            delay_ms = calculate_delay(attempt, opts, retry_after)
            attempt += 1
            logger.warning(
                f"Retryable failure (attempt {attempt}/{opts.max_retries}), "
                f"retrying in {delay_ms:.0f}ms: {error}"
            )
            if opts.on_retry:
                opts.on_retry(attempt, delay_ms, error)
            await sleep(delay_ms / 1000)


def with_retry(
    fn: Callable[..., Awaitable[T]],
    options: Optional[RetryOptions] = None,
    sleep: SleepFn = asyncio.sleep,
) -> Callable[..., Awaitable[T]]:
    """Wrap a coroutine function so every call goes through execute_with_retry."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> T:
        return await execute_with_retry(lambda: fn(*args, **kwargs), options, sleep)

    return wrapper


# =============================================================================
# Per-item batching
# =============================================================================


@dataclass
class BatchResult(Generic[R]):
    successful: List[R] = field(default_factory=list)
    failed: List[Tuple[Any, BaseException]] = field(default_factory=list)
    total: int = 0


async def process_batch(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    batch_size: int,
    batch_delay_ms: float,
    retry_options: Optional[RetryOptions] = None,
    on_progress: Optional[Callable[[int, int, T], None]] = None,
    on_error: Optional[Callable[[BaseException, T], bool]] = None,
    sleep: SleepFn = asyncio.sleep,
) -> BatchResult[R]:
    """Process items one at a time, each call retried on its own.

    The delay is inserted after every ``batch_size`` items, never after the
    last one. ``on_error`` returning False stops processing.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    result: BatchResult[R] = BatchResult(total=len(items))
    for i, item in enumerate(items):
        try:
            value = await execute_with_retry(
                functools.partial(operation, item), retry_options, sleep
            )
            result.successful.append(value)
            if on_progress:
                on_progress(i + 1, len(items), item)
        except Exception as error:
            result.failed.append((item, error))
            if on_error and not on_error(error, item):
                break

        is_end_of_group = (i + 1) % batch_size == 0
        is_last_item = i == len(items) - 1
        if is_end_of_group and not is_last_item:
            await sleep(batch_delay_ms / 1000)

    return result


# =============================================================================
# Per-group batching
# =============================================================================


@dataclass
class BatchGroupResult(Generic[R]):
    """Outcome of process_batches.

    Attributes:
        results: One entry per successful group, in group order.
        errors: (group index, error) for each group that failed after retries.
        success_count: Items in successful groups.
        failure_count: Items in failed groups.
        processed: Items attempted (success or failure).
        total: Items passed in.
        cancelled: Whether processing stopped before the last group.
    """

    results: List[R] = field(default_factory=list)
    errors: List[Tuple[int, BaseException]] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    processed: int = 0
    total: int = 0
    cancelled: bool = False


def split_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


async def process_batches(
    items: Sequence[T],
    process_fn: Callable[[List[T]], Awaitable[R]],
    batch_size: int,
    batch_delay_ms: float = 1000,
    retry_options: Optional[RetryOptions] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: SleepFn = asyncio.sleep,
) -> BatchGroupResult[R]:
    """Split items into groups and process each group as one retried call.

    A failed group is recorded with its index and its items still count
    as processed. Cancellation is checked before each group; an in-flight
    group always completes.
    """
    batches = split_batches(items, batch_size)
    result: BatchGroupResult[R] = BatchGroupResult(total=len(items))

    for index, batch in enumerate(batches):
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Batch processing cancelled before batch {index + 1}/{len(batches)}")
            result.cancelled = True
            break

        try:
            value = await execute_with_retry(
                functools.partial(process_fn, batch), retry_options, sleep
            )
            result.results.append(value)
            result.success_count += len(batch)
        except Exception as error:
            logger.error(f"Batch {index + 1}/{len(batches)} failed after retries: {error}")
            result.errors.append((index, error))
            result.failure_count += len(batch)
        result.processed += len(batch)

        if on_progress:
            on_progress(result.processed, len(items))

        if index < len(batches) - 1 and batch_delay_ms > 0:
            await sleep(batch_delay_ms / 1000)

    return result
