"""Execution control: retry policies, cancellation and target locks."""

from release_spine.execution.cancellation import CancellationToken
from release_spine.execution.locks import TargetLockManager
from release_spine.execution.retry import (
    ExponentialBackoff,
    NoRetry,
    RetryContext,
    RetryStrategy,
)

__all__ = [
    "CancellationToken",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "TargetLockManager",
]
