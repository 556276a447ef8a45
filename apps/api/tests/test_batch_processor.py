import asyncio
import random
from types import SimpleNamespace

import pytest

from clubledger_api.observability.batch import BatchObservabilityStore
from clubledger_api.services.accounting.errors import AccountingApiError, AccountingErrorKind
from clubledger_api.services.batch.processor import (
    DEFAULT_RETRY_STRATEGIES,
    BatchProcessor,
    RetryStrategy,
)


def _processor(sleep, **kwargs) -> BatchProcessor:
    return BatchProcessor(sleep=sleep, rng=random.Random(7), **kwargs)


def test_retry_delay_stays_within_strategy_bounds() -> None:
    processor = BatchProcessor(rng=random.Random(11))

    for strategy in DEFAULT_RETRY_STRATEGIES.values():
        for retry_count in range(12):
            delay = processor.calculate_retry_delay(retry_count, strategy)
            floor = min(strategy.base_delay_ms * strategy.backoff_multiplier**retry_count, strategy.max_delay_ms)
            assert floor <= delay <= strategy.max_delay_ms + strategy.jitter_ms


def test_retry_delay_without_jitter_is_monotonic_until_capped() -> None:
    processor = BatchProcessor()
    strategy = RetryStrategy(max_retries=5, base_delay_ms=1000, max_delay_ms=10_000, backoff_multiplier=2, jitter_ms=0)

    delays = [processor.calculate_retry_delay(count, strategy) for count in range(8)]

    assert delays[:4] == [1000, 2000, 4000, 8000]
    assert delays[4:] == [10_000] * 4
    assert delays == sorted(delays)


def test_named_strategies_match_dependency_tuning() -> None:
    assert DEFAULT_RETRY_STRATEGIES["xero_api"] == RetryStrategy(5, 1000, 300_000, 2, 1000)
    assert DEFAULT_RETRY_STRATEGIES["email"] == RetryStrategy(3, 5000, 60_000, 3, 2000)
    assert DEFAULT_RETRY_STRATEGIES["database"] == RetryStrategy(2, 500, 5000, 4, 500)

    with pytest.raises(ValueError):
        BatchProcessor().get_strategy("carrier_pigeon")


@pytest.mark.asyncio
async def test_retry_with_backoff_recovers_from_transient_failures(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    attempts = {"count": 0}

    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("connection reset")
        return "ok"

    result = await processor.retry_with_backoff(flaky, "xero_api", "flaky push")

    assert result.success is True
    assert result.result == "ok"
    assert result.attempts == 3
    assert len(recording_sleep.calls) == 2
    assert 1.0 <= recording_sleep.calls[0] <= 2.0
    assert 2.0 <= recording_sleep.calls[1] <= 3.0


@pytest.mark.asyncio
async def test_retry_with_backoff_formats_exhausted_failure(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise RuntimeError("boom")

    result = await processor.retry_with_backoff(broken, "database", "always broken")

    assert result.success is False
    assert calls["count"] == 3
    assert result.error == "Failed after 3 attempts: boom"
    # no wait after the final attempt
    assert len(recording_sleep.calls) == 2


@pytest.mark.asyncio
async def test_rate_limited_failures_wait_fixed_capped_delay(recording_sleep) -> None:
    processor = _processor(recording_sleep, rate_limit_delay_ms=5000, rate_limit_max_delay_ms=60_000)

    async def throttled() -> None:
        raise AccountingApiError("Too Many Requests", kind=AccountingErrorKind.RATE_LIMITED, status_code=429)

    result = await processor.retry_with_backoff(throttled, "xero_api", "throttled push")

    assert result.success is False
    assert result.rate_limited is True
    assert result.attempts == 6
    assert result.error == "Rate limit exceeded after 6 attempts: Too Many Requests"
    assert recording_sleep.calls == [5.0] * 5


@pytest.mark.asyncio
async def test_rate_limit_wait_honours_retry_after_up_to_cap(recording_sleep) -> None:
    processor = _processor(recording_sleep, rate_limit_delay_ms=5000, rate_limit_max_delay_ms=60_000)
    hints = iter([2000, 120_000])

    async def throttled_then_ok() -> str:
        hint = next(hints, None)
        if hint is None:
            return "done"
        raise AccountingApiError("quota", kind=AccountingErrorKind.RATE_LIMITED, retry_after_ms=hint)

    result = await processor.retry_with_backoff(throttled_then_ok, "xero_api")

    assert result.success is True
    assert recording_sleep.calls == [2.0, 60.0]


@pytest.mark.asyncio
async def test_plain_rate_limit_message_is_detected(recording_sleep) -> None:
    processor = _processor(recording_sleep)

    async def throttled() -> None:
        raise RuntimeError("Xero says: rate limit exceeded")

    result = await processor.retry_with_backoff(throttled, "database")

    assert result.error.startswith("Rate limit exceeded after 3 attempts")
    assert recording_sleep.calls == [5.0, 5.0]


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise AccountingApiError("Account code is invalid", kind=AccountingErrorKind.PERMANENT, status_code=400)

    result = await processor.retry_with_backoff(rejected, "xero_api")

    assert calls["count"] == 1
    assert result.error == "Failed after 1 attempts: Account code is invalid"
    assert recording_sleep.calls == []


@pytest.mark.asyncio
async def test_process_batch_collects_successes_and_failures(recording_sleep) -> None:
    processor = _processor(recording_sleep)

    async def double(value: int) -> int:
        if value == 3:
            raise ValueError("boom")
        return value * 2

    result = await processor.process_batch(
        [1, 2, 3, 4, 5],
        double,
        batch_size=2,
        concurrency=2,
        retry_failures=False,
    )

    assert sorted(result.successful) == [2, 4, 8, 10]
    assert len(result.failed) == 1
    assert result.failed[0].item == 3
    assert result.failed[0].error == "boom"
    assert result.metrics.total_items == 5
    assert result.metrics.success_count == 4
    assert result.metrics.failure_count == 1


@pytest.mark.asyncio
async def test_single_failing_item_never_aborts_the_batch(recording_sleep) -> None:
    processor = _processor(recording_sleep)

    async def push(value: int) -> int:
        if value == 7:
            raise RuntimeError("invoice rejected")
        return value

    result = await processor.process_batch(list(range(10)), push, operation_type="database")

    assert len(result.successful) == 9
    assert [failure.item for failure in result.failed] == [7]
    assert result.failed[0].error == "Failed after 3 attempts: invoice rejected"


@pytest.mark.asyncio
async def test_chunks_run_strictly_in_sequence(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    events: list[tuple[str, int]] = []

    async def record(value: int) -> int:
        events.append(("start", value))
        await asyncio.sleep(0.001 * (3 - value % 3))
        events.append(("end", value))
        return value

    await processor.process_batch(list(range(9)), record, batch_size=3, concurrency=3, retry_failures=False)

    chunks = [[0, 1, 2], [3, 4, 5], [6, 7, 8]]
    for previous, current in zip(chunks, chunks[1:]):
        last_end = max(events.index(("end", value)) for value in previous)
        first_start = min(events.index(("start", value)) for value in current)
        assert last_end < first_start


@pytest.mark.asyncio
async def test_windowed_limiter_does_not_refill_early() -> None:
    events: list[str] = []

    def factory(name: str, delay: float):
        async def run() -> str:
            events.append(f"start:{name}")
            await asyncio.sleep(delay)
            events.append(f"end:{name}")
            return name

        return run

    results = await BatchProcessor.limit_concurrency(
        [factory("slow", 0.02), factory("fast", 0), factory("next", 0)],
        2,
    )

    assert results == ["slow", "fast", "next"]
    assert events.index("start:next") > events.index("end:slow")


@pytest.mark.asyncio
async def test_priority_batch_orders_high_medium_low(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    seen: list[int] = []
    items = [
        {"id": 1, "priority": "low"},
        {"id": 2, "priority": "high"},
        {"id": 3, "priority": "medium"},
        {"id": 4},
        SimpleNamespace(id=5, priority="urgent"),
    ]

    async def record(item) -> int:
        item_id = item["id"] if isinstance(item, dict) else item.id
        seen.append(item_id)
        return item_id

    result = await processor.process_priority_batch(items, record, concurrency=1, retry_failures=False)

    assert seen == [2, 3, 1, 4, 5]
    assert result.metrics.priority_breakdown == {"high": 1, "medium": 1, "low": 3}


@pytest.mark.asyncio
async def test_priority_field_sorting_respects_sort_order(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    seen: list[int] = []

    async def record(item: dict) -> int:
        seen.append(item["rank"])
        return item["rank"]

    items = [{"rank": 2}, {"rank": 9}, {"rank": None}, {"rank": 4}]
    await processor.process_batch(items, record, concurrency=1, priority_field="rank", retry_failures=False)
    assert seen == [2, 4, 9, None]

    seen.clear()
    await processor.process_batch(
        [{"rank": 2}, {"rank": 9}, {"rank": 4}],
        record,
        concurrency=1,
        priority_field="rank",
        sort_order="desc",
        retry_failures=False,
    )
    assert seen == [9, 4, 2]


@pytest.mark.asyncio
async def test_progress_callback_and_inter_chunk_delay(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    progress: list[tuple[int, int, int, int]] = []

    async def on_progress(update) -> None:
        progress.append((update.completed, update.total, update.success_count, update.failure_count))

    async def fail_on_four(value: int) -> int:
        if value == 4:
            raise RuntimeError("nope")
        return value

    await processor.process_batch(
        [1, 2, 3, 4, 5],
        fail_on_four,
        batch_size=2,
        delay_between_batches_ms=100,
        retry_failures=False,
        progress_callback=on_progress,
    )

    assert progress == [(2, 5, 2, 0), (4, 5, 3, 1), (5, 5, 4, 1)]
    # two gaps between three chunks, nothing after the last one
    assert recording_sleep.calls == [0.1, 0.1]


@pytest.mark.asyncio
async def test_sync_progress_callback_is_supported(recording_sleep) -> None:
    processor = _processor(recording_sleep)
    completed: list[int] = []

    async def identity(value: int) -> int:
        return value

    await processor.process_batch(
        [1, 2, 3],
        identity,
        batch_size=1,
        retry_failures=False,
        progress_callback=lambda update: completed.append(update.completed),
    )

    assert completed == [1, 2, 3]


@pytest.mark.parametrize(
    ("total", "requested", "expected"),
    [
        (5, 10, 5),
        (50, 10, 10),
        (500, 10, 15),
        (500, 40, 25),
        (5000, 10, 20),
        (5000, 40, 50),
        (20_000, 10, 30),
        (20_000, 50, 100),
    ],
)
def test_optimized_batch_size_schedule(total: int, requested: int, expected: int) -> None:
    assert BatchProcessor.optimize_batch_size(total, requested) == expected


@pytest.mark.asyncio
async def test_empty_batch_reports_zero_metrics(recording_sleep) -> None:
    processor = _processor(recording_sleep)

    async def never(value: int) -> int:  # pragma: no cover - not invoked
        return value

    result = await processor.process_batch([], never)

    assert result.successful == []
    assert result.failed == []
    assert result.metrics.total_items == 0
    assert result.metrics.average_item_time_ms == 0.0


@pytest.mark.asyncio
async def test_batch_runs_are_recorded_in_observability_store(recording_sleep) -> None:
    store = BatchObservabilityStore()
    processor = _processor(recording_sleep, observability=store)

    async def maybe_fail(value: int) -> int:
        if value % 2:
            raise RuntimeError("odd")
        return value

    await processor.process_batch([1, 2, 3, 4], maybe_fail, retry_failures=False, operation_type="email")

    snapshot = store.snapshot()
    assert snapshot.totals == {"runs": 1, "items": 4, "success": 2, "failures": 2}
    email = snapshot.operations["email"].as_dict()
    assert email["last_success_count"] == 2
    assert email["last_failure_count"] == 2
    assert email["last_run_at"] is not None


@pytest.mark.asyncio
async def test_peak_memory_is_the_process_high_water_mark(recording_sleep, monkeypatch) -> None:
    from clubledger_api.services.batch import processor as processor_module

    samples = iter([512.0, 256.0])
    monkeypatch.setattr(processor_module, "_process_peak_rss_mb", lambda: next(samples))
    store = BatchObservabilityStore()
    processor = _processor(recording_sleep, observability=store)

    async def echo(value: int) -> int:
        return value

    first = await processor.process_batch([1], echo, operation_type="email")
    second = await processor.process_batch([2], echo, operation_type="email")

    assert first.metrics.peak_memory_usage_mb == 512.0
    assert second.metrics.peak_memory_usage_mb == 256.0
    assert store.snapshot().operations["email"].peak_memory_usage_mb == 512.0
