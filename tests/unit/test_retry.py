"""
tests/unit/test_retry.py — Retry Engine Tests

Covers:
  - compute_delay: exponential / linear / fixed, jitter bounds, max_delay cap
  - execute: success, success after retries, non-retryable, exhaustion
  - policy category filter (retryable error outside the policy's set)
  - in-flight state tracking between attempts
  - RetryPolicy.from_settings
"""

from __future__ import annotations

import asyncio

import pytest

from taskloop.config.settings import RetrySettings
from taskloop.errors.classifier import ErrorClassifier
from taskloop.errors.retry import RetryEngine, RetryPolicy, RetryStrategy, compute_delay
from taskloop.exceptions import ClassifiedError, ErrorCategory


# ── Helpers ───────────────────────────────────────────────────────────────────

class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _make_engine(policy=None, rng=lambda: 0.0, sleep=None):
    sleep = sleep or RecordingSleep()
    engine = RetryEngine(
        classifier=ErrorClassifier(),
        policy=policy or RetryPolicy(),
        sleep=sleep,
        rng=rng,
        clock=lambda: 1000.0,
    )
    return engine, sleep


def _failing_then(result, failures: list[BaseException]):
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return op, calls


# ─────────────────────────────────────────────────────────────────────────────
# compute_delay
# ─────────────────────────────────────────────────────────────────────────────

class TestComputeDelay:

    def test_exponential_without_jitter(self):
        policy = RetryPolicy()
        assert [compute_delay(a, policy, lambda: 0.0) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_exponential_with_full_jitter(self):
        policy = RetryPolicy()
        delays = [compute_delay(a, policy, lambda: 1.0) for a in (1, 2, 3)]
        assert delays == pytest.approx([1.1, 2.2, 4.4])

    def test_linear(self):
        policy = RetryPolicy(strategy=RetryStrategy.LINEAR, base_delay=2.0)
        assert [compute_delay(a, policy, lambda: 0.0) for a in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_fixed(self):
        policy = RetryPolicy(strategy=RetryStrategy.FIXED, base_delay=0.5)
        assert [compute_delay(a, policy, lambda: 0.0) for a in (1, 2, 3)] == [0.5, 0.5, 0.5]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0)
        assert compute_delay(3, policy, lambda: 1.0) == 15.0

    @pytest.mark.parametrize("attempt", [1, 2, 3, 4, 5])
    def test_jitter_bounds(self, attempt):
        policy = RetryPolicy(max_delay=1000.0)
        base = policy.base_delay * 2 ** (attempt - 1)
        for r in (0.0, 0.25, 0.5, 0.99):
            delay = compute_delay(attempt, policy, lambda: r)
            assert base <= delay <= base * 1.1


# ─────────────────────────────────────────────────────────────────────────────
# execute
# ─────────────────────────────────────────────────────────────────────────────

class TestExecute:

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [])
        assert await engine.execute(op) == "ok"
        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_sync_operation(self):
        engine, _ = _make_engine()
        assert await engine.execute(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_success_after_two_network_failures(self):
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [
            ConnectionError("ECONNRESET"),
            ConnectionError("ECONNRESET"),
        ])
        assert await engine.execute(op) == "ok"
        assert calls["n"] == 3
        assert sleep.delays == [1.0, 2.0]
        assert engine.in_flight() == []

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [PermissionError("EACCES: permission denied")])
        with pytest.raises(ClassifiedError) as exc_info:
            await engine.execute(op)
        assert exc_info.value.category is ErrorCategory.PERMISSION
        assert exc_info.value.retryable is False
        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_category_outside_policy_not_retried(self):
        # filesystem errors are retryable but not in the default policy set
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [FileNotFoundError("a.txt")])
        with pytest.raises(ClassifiedError) as exc_info:
            await engine.execute(op)
        assert exc_info.value.category is ErrorCategory.FILESYSTEM
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [TimeoutError()] * 5)
        with pytest.raises(ClassifiedError) as exc_info:
            await engine.execute(op, operation_id="op_x")
        assert calls["n"] == 3
        assert sleep.delays == [1.0, 2.0]
        assert exc_info.value.category is ErrorCategory.TIMEOUT
        assert exc_info.value.context["attempt"] == 3
        assert exc_info.value.context["operation_id"] == "op_x"
        assert engine.get_state("op_x") is None

    @pytest.mark.asyncio
    async def test_per_call_policy(self):
        engine, sleep = _make_engine()
        op, calls = _failing_then("ok", [ConnectionError("down")] * 5)
        with pytest.raises(ClassifiedError):
            await engine.execute(op, RetryPolicy(max_attempts=1))
        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_zero_attempts(self):
        engine, _ = _make_engine(policy=RetryPolicy(max_attempts=0))
        with pytest.raises(ClassifiedError) as exc_info:
            await engine.execute(lambda: "never")
        assert exc_info.value.code == "INVALID_RETRY_POLICY"

    @pytest.mark.asyncio
    async def test_context_is_attached(self):
        engine, _ = _make_engine()

        def denied():
            raise PermissionError("x")

        with pytest.raises(ClassifiedError) as exc_info:
            await engine.execute(denied, context={"session_id": "sess_1"})
        assert exc_info.value.context["session_id"] == "sess_1"

    @pytest.mark.asyncio
    async def test_failures_are_recorded_by_classifier(self):
        classifier = ErrorClassifier()
        engine = RetryEngine(classifier=classifier, sleep=RecordingSleep(), rng=lambda: 0.0)
        assert engine.classifier is classifier

        op, _ = _failing_then("ok", [ConnectionError("down")])
        await engine.execute(op)
        assert len(classifier) == 1


# ─────────────────────────────────────────────────────────────────────────────
# In-flight tracking
# ─────────────────────────────────────────────────────────────────────────────

class TestInFlight:

    @pytest.mark.asyncio
    async def test_state_visible_during_sleep(self):
        seen = []
        engine = None

        async def sleep(delay):
            seen.append([(s.operation_id, s.attempt, s.next_retry_at) for s in engine.in_flight()])

        engine = RetryEngine(sleep=sleep, rng=lambda: 0.0, clock=lambda: 1000.0)
        op, _ = _failing_then("ok", [ConnectionError("down")])
        await engine.execute(op, operation_id="op_1")

        assert seen == [[("op_1", 1, 1001.0)]]
        assert engine.in_flight() == []

    @pytest.mark.asyncio
    async def test_concurrent_operations_tracked_separately(self):
        gate = asyncio.Event()

        async def sleep(delay):
            await gate.wait()

        engine = RetryEngine(sleep=sleep, rng=lambda: 0.0)
        op_a, _ = _failing_then("a", [ConnectionError("down")])
        op_b, _ = _failing_then("b", [ConnectionError("down")])
        task_a = asyncio.create_task(engine.execute(op_a, operation_id="a"))
        task_b = asyncio.create_task(engine.execute(op_b, operation_id="b"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert {s.operation_id for s in engine.in_flight()} == {"a", "b"}
        gate.set()
        assert await asyncio.gather(task_a, task_b) == ["a", "b"]
        assert engine.in_flight() == []

    @pytest.mark.asyncio
    async def test_state_cleared_when_cancelled_during_backoff(self):
        engine = RetryEngine(rng=lambda: 0.0, policy=RetryPolicy(base_delay=60.0))

        async def down():
            raise ConnectionError("down")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.execute(down, operation_id="op_1"), timeout=0.05)

        assert engine.get_state("op_1") is None
        assert engine.in_flight() == []


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

class TestPolicyFromSettings:

    def test_from_settings(self):
        cfg = RetrySettings(max_attempts=5, base_delay=0.5, strategy="LINEAR",
                            retryable_categories=["network", "filesystem"])
        policy = RetryPolicy.from_settings(cfg)
        assert policy.max_attempts == 5
        assert policy.strategy is RetryStrategy.LINEAR
        assert policy.retryable_categories == frozenset({
            ErrorCategory.NETWORK, ErrorCategory.FILESYSTEM,
        })
