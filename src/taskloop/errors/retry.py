"""
errors/retry.py — Retry Engine

Wraps a no-argument operation with classification and backoff.

Retries when the classified error is retryable AND its category is in the
policy's retryable set. Anything else surfaces immediately as the
ClassifiedError. The caller always gets full classification and
suggestions, never the raw exception.

Backoff formula (attempt is 1-based, k-th retry follows attempt k):
    exponential: base * 2^(attempt-1)
    linear:      base * attempt
    fixed:       base
then + up to jitter_ratio (10%) of that, capped at max_delay.

There is no built-in cancellation: once started, the loop runs to success
or exhaustion. Callers needing a hard deadline race it themselves:

    result = await asyncio.wait_for(engine.execute(op), timeout=60)
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from taskloop.errors.classifier import ErrorClassifier
from taskloop.exceptions import ClassifiedError, ErrorCategory
from taskloop.observability.logger import get_logger

log = get_logger(__name__)

Operation = Callable[[], Union[Awaitable[Any], Any]]


class RetryStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration for one execute() call. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    jitter_ratio: float = 0.1
    retryable_categories: frozenset[ErrorCategory] = field(
        default_factory=lambda: frozenset({
            ErrorCategory.NETWORK,
            ErrorCategory.TIMEOUT,
            ErrorCategory.SYSTEM,
        })
    )

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        """Build from a config.settings.RetrySettings instance."""
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay,
            max_delay=cfg.max_delay,
            strategy=RetryStrategy(cfg.strategy),
            jitter_ratio=cfg.jitter_ratio,
            retryable_categories=frozenset(ErrorCategory(c) for c in cfg.retryable_categories),
        )


@dataclass
class RetryState:
    """In-flight tracking for one retry loop. Removed once the loop ends, however it ends."""
    operation_id: str
    attempt: int
    last_error: ClassifiedError
    next_retry_at: float


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds to wait after the given (1-based) failed attempt."""
    if policy.strategy is RetryStrategy.EXPONENTIAL:
        delay = policy.base_delay * (2 ** (attempt - 1))
    elif policy.strategy is RetryStrategy.LINEAR:
        delay = policy.base_delay * attempt
    else:
        delay = policy.base_delay

    delay += rng() * policy.jitter_ratio * delay
    return min(delay, policy.max_delay)


def is_retryable(err: ClassifiedError, policy: RetryPolicy) -> bool:
    return err.retryable and err.category in policy.retryable_categories


class RetryEngine:
    """
    Executes operations with classification + backoff.

    `sleep`, `rng` and `clock` are injectable so tests can observe the
    computed delays without waiting for them.
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.classifier = classifier if classifier is not None else ErrorClassifier()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._clock = clock
        self._in_flight: dict[str, RetryState] = {}

    async def execute(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        *,
        operation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Run `operation` until it succeeds or the policy gives up.

        `operation` may be sync or return an awaitable. Raises the last
        ClassifiedError on non-retryable failure or exhaustion.
        """
        policy = policy or self.policy
        op_id = operation_id or f"op_{uuid.uuid4().hex[:12]}"

        try:
            for attempt in range(1, policy.max_attempts + 1):
                try:
                    log.debug("retry.attempt", operation_id=op_id,
                              attempt=attempt, max_attempts=policy.max_attempts)
                    result = operation()
                    if inspect.isawaitable(result):
                        result = await result
                except Exception as exc:
                    err = self.classifier.handle(exc, {
                        **(context or {}),
                        "operation_id": op_id,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                    })

                    if not is_retryable(err, policy):
                        log.warning("retry.non_retryable", operation_id=op_id,
                                    attempt=attempt, code=err.code, category=err.category.value)
                        raise err

                    if attempt == policy.max_attempts:
                        log.error("retry.exhausted", operation_id=op_id,
                                  attempts=policy.max_attempts, code=err.code,
                                  category=err.category.value)
                        raise err

                    delay = compute_delay(attempt, policy, self._rng)
                    self._in_flight[op_id] = RetryState(
                        operation_id=op_id,
                        attempt=attempt,
                        last_error=err,
                        next_retry_at=self._clock() + delay,
                    )
                    log.warning("retry.attempt_failed", operation_id=op_id, attempt=attempt,
                                delay_s=round(delay, 3), code=err.code, error=err.message[:200])
                    await self._sleep(delay)
                else:
                    if attempt > 1:
                        log.info("retry.succeeded", operation_id=op_id, attempt=attempt)
                    return result
        finally:
            # Cleared on success, final failure and cancellation alike.
            self._in_flight.pop(op_id, None)

        # max_attempts >= 1 is enforced by settings; reaching here means 0 attempts.
        raise ClassifiedError(
            "Retry policy allows no attempts",
            category=ErrorCategory.VALIDATION,
            code="INVALID_RETRY_POLICY",
            retryable=False,
            context={"operation_id": op_id, "max_attempts": policy.max_attempts},
        )

    # ── Observability ────────────────────────────────────────────────────────

    def in_flight(self) -> list[RetryState]:
        """Snapshot of retry loops currently waiting between attempts."""
        return list(self._in_flight.values())

    def get_state(self, operation_id: str) -> Optional[RetryState]:
        return self._in_flight.get(operation_id)
