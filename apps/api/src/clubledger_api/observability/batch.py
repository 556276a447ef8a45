"""Observability store for batch executor runs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Dict

if TYPE_CHECKING:
    from clubledger_api.services.batch.processor import BatchMetrics


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchOperationSnapshot:
    """Serializable snapshot of one operation type's batch history."""

    operation_type: str
    totals: Dict[str, int]
    timings: Dict[str, float]
    last_run_at: datetime | None
    last_success_count: int
    last_failure_count: int
    peak_memory_usage_mb: float | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "operation_type": self.operation_type,
            "totals": self.totals,
            "timings": self.timings,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_count": self.last_success_count,
            "last_failure_count": self.last_failure_count,
            "peak_memory_usage_mb": self.peak_memory_usage_mb,
        }


@dataclass
class BatchSnapshot:
    totals: Dict[str, int]
    operations: Dict[str, BatchOperationSnapshot]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "operations": {key: snapshot.as_dict() for key, snapshot in self.operations.items()},
        }


@dataclass
class BatchOperationState:
    operation_type: str
    total_runs: int = 0
    total_items: int = 0
    total_success: int = 0
    total_failures: int = 0
    total_processing_ms: float = 0.0
    last_run_at: datetime | None = None
    last_success_count: int = 0
    last_failure_count: int = 0
    last_average_item_ms: float = 0.0
    peak_memory_usage_mb: float | None = None

    def snapshot(self) -> BatchOperationSnapshot:
        return BatchOperationSnapshot(
            operation_type=self.operation_type,
            totals={
                "runs": self.total_runs,
                "items": self.total_items,
                "success": self.total_success,
                "failures": self.total_failures,
            },
            timings={
                "total_processing_ms": self.total_processing_ms,
                "last_average_item_ms": self.last_average_item_ms,
            },
            last_run_at=self.last_run_at,
            last_success_count=self.last_success_count,
            last_failure_count=self.last_failure_count,
            peak_memory_usage_mb=self.peak_memory_usage_mb,
        )


class BatchObservabilityStore:
    """Tracks batch executor metrics per operation type."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._operations: Dict[str, BatchOperationState] = {}

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()

    def record_run(self, operation_type: str, metrics: "BatchMetrics") -> None:
        with self._lock:
            state = self._operations.get(operation_type)
            if state is None:
                state = BatchOperationState(operation_type=operation_type)
                self._operations[operation_type] = state
            state.total_runs += 1
            state.total_items += metrics.total_items
            state.total_success += metrics.success_count
            state.total_failures += metrics.failure_count
            state.total_processing_ms += metrics.processing_time_ms
            state.last_run_at = _utcnow()
            state.last_success_count = metrics.success_count
            state.last_failure_count = metrics.failure_count
            state.last_average_item_ms = metrics.average_item_time_ms
            if metrics.peak_memory_usage_mb is not None:
                state.peak_memory_usage_mb = max(state.peak_memory_usage_mb or 0.0, metrics.peak_memory_usage_mb)

    def snapshot(self) -> BatchSnapshot:
        with self._lock:
            operations = {key: state.snapshot() for key, state in self._operations.items()}
            totals = {
                "runs": sum(state.total_runs for state in self._operations.values()),
                "items": sum(state.total_items for state in self._operations.values()),
                "success": sum(state.total_success for state in self._operations.values()),
                "failures": sum(state.total_failures for state in self._operations.values()),
            }
        return BatchSnapshot(totals=totals, operations=operations)


__all__ = ["BatchObservabilityStore", "BatchSnapshot", "BatchOperationSnapshot"]
