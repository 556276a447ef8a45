"""Chunked batch execution with retry, backoff and rate-limit handling.

Work items are processed chunk by chunk. Inside a chunk, items run in
windows of ``concurrency`` coroutines; a window is awaited in full before
the next one starts. Each item is wrapped in :meth:`BatchProcessor.retry_with_backoff`
unless retries are disabled, and a failing item never aborts its siblings.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import random
import sys
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Generic, Literal, Mapping, Sequence, TypeVar

from loguru import logger

from clubledger_api.observability.batch import BatchObservabilityStore
from clubledger_api.services.accounting.errors import AccountingApiError, is_rate_limit_error

try:
    import resource
except ImportError:  # pragma: no cover - non-POSIX platforms report no memory metric
    resource = None  # type: ignore[assignment]

T = TypeVar("T")
R = TypeVar("R")

Priority = Literal["high", "medium", "low"]
SortOrder = Literal["asc", "desc"]
SleepCallable = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RetryStrategy:
    """Backoff policy for one class of dependency. Delays are milliseconds."""

    max_retries: int
    base_delay_ms: float
    max_delay_ms: float
    backoff_multiplier: float
    jitter_ms: float


DEFAULT_RETRY_STRATEGIES: Mapping[str, RetryStrategy] = MappingProxyType(
    {
        "xero_api": RetryStrategy(
            max_retries=5,
            base_delay_ms=1_000,
            max_delay_ms=300_000,
            backoff_multiplier=2,
            jitter_ms=1_000,
        ),
        "email": RetryStrategy(
            max_retries=3,
            base_delay_ms=5_000,
            max_delay_ms=60_000,
            backoff_multiplier=3,
            jitter_ms=2_000,
        ),
        "database": RetryStrategy(
            max_retries=2,
            base_delay_ms=500,
            max_delay_ms=5_000,
            backoff_multiplier=4,
            jitter_ms=500,
        ),
    }
)


@dataclass(slots=True)
class RetryResult(Generic[R]):
    success: bool
    result: R | None = None
    error: str | None = None
    attempts: int = 0
    rate_limited: bool = False


@dataclass(slots=True)
class BatchFailure(Generic[T]):
    item: T
    error: str
    rate_limited: bool = False


@dataclass(slots=True)
class BatchProgress:
    completed: int
    total: int
    success_count: int
    failure_count: int


@dataclass(slots=True)
class BatchMetrics:
    """Counters for one batch run.

    ``peak_memory_usage_mb`` is the process high-water RSS (``ru_maxrss``) sampled
    after each chunk. It is monotonic over the process lifetime, so it never
    drops between runs.
    """

    total_items: int
    success_count: int
    failure_count: int
    processing_time_ms: float
    average_item_time_ms: float
    peak_memory_usage_mb: float | None = None
    priority_breakdown: dict[str, int] | None = None

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "processing_time_ms": self.processing_time_ms,
            "average_item_time_ms": self.average_item_time_ms,
        }
        if self.peak_memory_usage_mb is not None:
            payload["peak_memory_usage_mb"] = self.peak_memory_usage_mb
        if self.priority_breakdown is not None:
            payload["priority_breakdown"] = dict(self.priority_breakdown)
        return payload


@dataclass(slots=True)
class BatchResult(Generic[T, R]):
    successful: list[R] = field(default_factory=list)
    failed: list[BatchFailure[T]] = field(default_factory=list)
    metrics: BatchMetrics | None = None


@dataclass(slots=True)
class _ItemOutcome:
    item: Any
    success: bool
    result: Any = None
    error: str | None = None
    rate_limited: bool = False


ProgressCallback = Callable[[BatchProgress], Any]


def _read_field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def _process_peak_rss_mb() -> float | None:
    """Lifetime peak resident set size of this process, not its current usage."""

    if resource is None:
        return None
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        return peak / 1024 / 1024
    return peak / 1024


class BatchProcessor:
    """Generic async batch executor with per-item retry."""

    def __init__(
        self,
        *,
        retry_strategies: Mapping[str, RetryStrategy] | None = None,
        rate_limit_delay_ms: float = 5_000,
        rate_limit_max_delay_ms: float = 60_000,
        sleep: SleepCallable | None = None,
        rng: random.Random | None = None,
        observability: BatchObservabilityStore | None = None,
    ) -> None:
        self._retry_strategies: Mapping[str, RetryStrategy] = MappingProxyType(
            dict(retry_strategies if retry_strategies is not None else DEFAULT_RETRY_STRATEGIES)
        )
        self._rate_limit_delay_ms = rate_limit_delay_ms
        self._rate_limit_max_delay_ms = rate_limit_max_delay_ms
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._observability = observability

    @property
    def retry_strategies(self) -> Mapping[str, RetryStrategy]:
        return self._retry_strategies

    def get_strategy(self, operation_type: str) -> RetryStrategy:
        try:
            return self._retry_strategies[operation_type]
        except KeyError:
            raise ValueError(f"Unknown retry strategy: {operation_type}") from None

    def get_status(self) -> dict[str, object]:
        return {
            "retry_strategies": sorted(self._retry_strategies),
            "rate_limit_delay_ms": self._rate_limit_delay_ms,
            "rate_limit_max_delay_ms": self._rate_limit_max_delay_ms,
        }

    def calculate_retry_delay(self, retry_count: int, strategy: RetryStrategy) -> float:
        """Exponential delay capped at ``max_delay_ms`` plus uniform jitter, in milliseconds."""

        exponential = strategy.base_delay_ms * (strategy.backoff_multiplier ** retry_count)
        capped = min(exponential, strategy.max_delay_ms)
        jitter = self._rng.uniform(0, strategy.jitter_ms) if strategy.jitter_ms > 0 else 0.0
        return capped + jitter

    def calculate_rate_limit_delay(self, error: BaseException) -> float:
        """Fixed wait for rate-limited calls, honouring a provider hint up to the cap."""

        hinted = error.retry_after_ms if isinstance(error, AccountingApiError) else None
        delay = hinted if hinted is not None else self._rate_limit_delay_ms
        return min(max(delay, 0), self._rate_limit_max_delay_ms)

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[R]],
        operation_type: str = "xero_api",
        context: str = "Unknown operation",
    ) -> RetryResult[R]:
        strategy = self.get_strategy(operation_type)
        total_attempts = strategy.max_retries + 1
        last_error: BaseException | None = None
        last_rate_limited = False
        attempts = 0

        for attempt in range(total_attempts):
            attempts = attempt + 1
            try:
                logger.debug("Attempting batch operation", context=context, attempt=attempts, max_attempts=total_attempts)
                result = await operation()
            except Exception as exc:
                last_error = exc
                last_rate_limited = is_rate_limit_error(exc)
                logger.warning(
                    "Batch operation attempt failed",
                    context=context,
                    attempt=attempts,
                    max_attempts=total_attempts,
                    rate_limited=last_rate_limited,
                    error=_error_message(exc),
                )

                if isinstance(exc, AccountingApiError) and not exc.is_retryable:
                    break
                if attempt == strategy.max_retries:
                    break

                if last_rate_limited:
                    delay_ms = self.calculate_rate_limit_delay(exc)
                else:
                    delay_ms = self.calculate_retry_delay(attempt, strategy)
                logger.info(
                    "Waiting before retry",
                    context=context,
                    delay_ms=round(delay_ms),
                    rate_limited=last_rate_limited,
                )
                await self._delay(delay_ms)
                continue

            if attempt > 0:
                logger.info("Batch operation succeeded after retry", context=context, attempts=attempts)
            return RetryResult(success=True, result=result, attempts=attempts)

        message = _error_message(last_error) if last_error is not None else "Unknown error"
        if last_rate_limited:
            error = f"Rate limit exceeded after {attempts} attempts: {message}"
        else:
            error = f"Failed after {attempts} attempts: {message}"
        logger.error("Batch operation failed after all retries", context=context, error=error)
        return RetryResult(success=False, error=error, attempts=attempts, rate_limited=last_rate_limited)

    async def process_batch(
        self,
        items: Sequence[T],
        processor: Callable[[T], Awaitable[R]],
        *,
        batch_size: int = 10,
        concurrency: int = 3,
        delay_between_batches_ms: float = 100,
        retry_failures: bool = True,
        operation_type: str = "xero_api",
        priority_field: str | None = None,
        sort_order: SortOrder = "asc",
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult[T, R]:
        if retry_failures:
            self.get_strategy(operation_type)

        started_at = time.perf_counter()
        successful: list[R] = []
        failed: list[BatchFailure[T]] = []
        peak_memory_mb = 0.0

        logger.info(
            "Processing batch",
            total_items=len(items),
            batch_size=batch_size,
            concurrency=concurrency,
            operation_type=operation_type,
        )

        ordered: list[T] = list(items)
        if priority_field:
            ordered.sort(
                key=lambda item: (_read_field(item, priority_field) is None, _read_field(item, priority_field)),
                reverse=sort_order == "desc",
            )
            logger.info("Sorted batch items", total_items=len(ordered), priority_field=priority_field, sort_order=sort_order)

        optimized_batch_size = self.optimize_batch_size(len(ordered), batch_size)
        optimized_concurrency = max(1, min(concurrency, math.ceil(optimized_batch_size / 2)))
        logger.info(
            "Optimized batch parameters",
            batch_size=optimized_batch_size,
            concurrency=optimized_concurrency,
        )

        chunks = self.chunk(ordered, optimized_batch_size) if ordered else []
        offset = 0
        for index, chunk in enumerate(chunks):
            logger.info("Processing chunk", chunk=index + 1, chunks=len(chunks), size=len(chunk))

            factories = [
                self._item_runner(item, processor, retry_failures, operation_type, f"Processing item {offset + position + 1}")
                for position, item in enumerate(chunk)
            ]
            offset += len(chunk)
            outcomes = await self.limit_concurrency(factories, optimized_concurrency)

            for outcome in outcomes:
                if outcome.success:
                    successful.append(outcome.result)
                else:
                    failed.append(
                        BatchFailure(item=outcome.item, error=outcome.error or "Unknown error", rate_limited=outcome.rate_limited)
                    )

            memory_mb = _process_peak_rss_mb()
            if memory_mb is not None:
                peak_memory_mb = max(peak_memory_mb, memory_mb)

            if progress_callback is not None:
                progress = BatchProgress(
                    completed=min((index + 1) * optimized_batch_size, len(ordered)),
                    total=len(ordered),
                    success_count=len(successful),
                    failure_count=len(failed),
                )
                maybe_awaitable = progress_callback(progress)
                if inspect.isawaitable(maybe_awaitable):
                    await maybe_awaitable

            if index < len(chunks) - 1 and delay_between_batches_ms > 0:
                await self._delay(delay_between_batches_ms)

        processing_time_ms = (time.perf_counter() - started_at) * 1000
        metrics = BatchMetrics(
            total_items=len(items),
            success_count=len(successful),
            failure_count=len(failed),
            processing_time_ms=processing_time_ms,
            average_item_time_ms=processing_time_ms / len(items) if items else 0.0,
            peak_memory_usage_mb=peak_memory_mb if peak_memory_mb > 0 else None,
        )
        self.log_processing_metrics(operation_type, metrics)
        return BatchResult(successful=successful, failed=failed, metrics=metrics)

    async def process_priority_batch(
        self,
        items: Sequence[T],
        processor: Callable[[T], Awaitable[R]],
        *,
        batch_size: int = 10,
        concurrency: int = 3,
        delay_between_batches_ms: float = 100,
        retry_failures: bool = True,
        operation_type: str = "xero_api",
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult[T, R]:
        """Run ``items`` high, then medium, then low priority; anything else counts as low."""

        buckets: dict[str, list[T]] = {"high": [], "medium": [], "low": []}
        for item in items:
            priority = _read_field(item, "priority")
            buckets[priority if priority in ("high", "medium") else "low"].append(item)

        priority_breakdown = {key: len(bucket) for key, bucket in buckets.items()}
        logger.info("Processing priority batch", **priority_breakdown)

        result = await self.process_batch(
            buckets["high"] + buckets["medium"] + buckets["low"],
            processor,
            batch_size=batch_size,
            concurrency=concurrency,
            delay_between_batches_ms=delay_between_batches_ms,
            retry_failures=retry_failures,
            operation_type=operation_type,
            progress_callback=progress_callback,
        )
        if result.metrics is not None:
            result.metrics.priority_breakdown = priority_breakdown
        return result

    def log_processing_metrics(self, operation_type: str, metrics: BatchMetrics) -> None:
        logger.info("Batch processing completed", operation_type=operation_type, **metrics.as_dict())
        if self._observability is not None:
            self._observability.record_run(operation_type, metrics)

    @staticmethod
    def optimize_batch_size(total_items: int, requested_batch_size: int) -> int:
        """Scale the chunk size with volume; the per-tier ceilings win over the multipliers."""

        requested = max(requested_batch_size, 1)
        if total_items <= 100:
            size: float = min(requested, total_items)
        elif total_items <= 1_000:
            size = min(requested * 1.5, 25)
        elif total_items <= 10_000:
            size = min(requested * 2, 50)
        else:
            size = min(requested * 3, 100)
        return max(int(size), 1)

    @staticmethod
    def chunk(items: Sequence[T], chunk_size: int) -> list[list[T]]:
        return [list(items[start : start + chunk_size]) for start in range(0, len(items), chunk_size)]

    @staticmethod
    async def limit_concurrency(
        factories: Sequence[Callable[[], Awaitable[R]]],
        concurrency: int,
    ) -> list[R]:
        """Await ``factories`` in fixed windows of ``concurrency``; no slot is refilled early."""

        window = max(concurrency, 1)
        results: list[R] = []
        for start in range(0, len(factories), window):
            group = factories[start : start + window]
            results.extend(await asyncio.gather(*(factory() for factory in group)))
        return results

    def _item_runner(
        self,
        item: T,
        processor: Callable[[T], Awaitable[R]],
        retry_failures: bool,
        operation_type: str,
        context: str,
    ) -> Callable[[], Awaitable[_ItemOutcome]]:
        async def _run() -> _ItemOutcome:
            if retry_failures:
                retry_result = await self.retry_with_backoff(lambda: processor(item), operation_type, context)
                if retry_result.success:
                    return _ItemOutcome(item=item, success=True, result=retry_result.result)
                return _ItemOutcome(
                    item=item,
                    success=False,
                    error=retry_result.error or "Unknown error",
                    rate_limited=retry_result.rate_limited,
                )
            try:
                result = await processor(item)
            except Exception as exc:
                return _ItemOutcome(item=item, success=False, error=_error_message(exc), rate_limited=is_rate_limit_error(exc))
            return _ItemOutcome(item=item, success=True, result=result)

        return _run

    async def _delay(self, milliseconds: float) -> None:
        await self._sleep(milliseconds / 1000)


__all__ = [
    "BatchFailure",
    "BatchMetrics",
    "BatchProcessor",
    "BatchProgress",
    "BatchResult",
    "DEFAULT_RETRY_STRATEGIES",
    "RetryResult",
    "RetryStrategy",
]
