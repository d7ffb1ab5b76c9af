from taskloop.errors.classifier import ErrorClassifier, classify, severity_for
from taskloop.errors.retry import (
    RetryEngine,
    RetryPolicy,
    RetryState,
    RetryStrategy,
    compute_delay,
    is_retryable,
)

__all__ = [
    "ErrorClassifier",
    "RetryEngine",
    "RetryPolicy",
    "RetryState",
    "RetryStrategy",
    "classify",
    "compute_delay",
    "is_retryable",
    "severity_for",
]
