"""Batch execution with retry and backoff."""

from .processor import (
    DEFAULT_RETRY_STRATEGIES,
    BatchFailure,
    BatchMetrics,
    BatchProcessor,
    BatchProgress,
    BatchResult,
    RetryResult,
    RetryStrategy,
)

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
