"""
Unit tests for the backoff retry engine.

Sleeps are replaced by a recorder so tests observe the exact wait
schedule without waiting.
"""

import asyncio
import time

import pytest

from quota_orchestrator.errors import OperationTimeoutError, QuotaExceededError, RetriesExhaustedError
from quota_orchestrator.ratelimit.metrics import get_metrics_collector
from quota_orchestrator.reliability.retry import (
    RetryConfig,
    RetryEngine,
    RetryState,
    backoff_delay,
    retry_with_backoff,
)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def flaky(failures, result="ok"):
    """Async operation that fails `failures` times before succeeding."""
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ConnectionError(f"failure {calls['count']}")
        return result

    return operation, calls


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def engine(sleeps):
    return RetryEngine(sleep=sleeps)


def test_backoff_delay_is_bounded():
    config = RetryConfig(base_delay=1.0, max_delay=10.0, backoff_multiplier=2.0, max_jitter=1.0)

    assert backoff_delay(1, config, rand=lambda: 0.0) == 1.0
    assert backoff_delay(3, config, rand=lambda: 0.0) == 4.0
    assert backoff_delay(10, config, rand=lambda: 0.0) == 10.0
    assert backoff_delay(10, config, rand=lambda: 0.999) < 11.0


def test_success_after_three_failures_waits_three_times(engine, sleeps):
    operation, calls = flaky(3)

    result = asyncio.run(engine.with_retry(operation, "apollo.search"))

    assert result == "ok"
    assert calls["count"] == 4
    assert len(sleeps.delays) == 3
    for attempt, delay in enumerate(sleeps.delays, start=1):
        floor = min(1.0 * 2.0 ** (attempt - 1), 10.0)
        assert floor <= delay <= 10.0 + 1.0
    assert engine.attempts["apollo.search"] == 0
    assert engine.states["apollo.search"] == RetryState.SUCCEEDED


def test_first_try_success_does_not_wait(engine, sleeps):
    operation, calls = flaky(0, result=42)

    assert asyncio.run(engine.with_retry(operation, "op")) == 42
    assert sleeps.delays == []


def test_zero_retries_fails_after_one_attempt(engine, sleeps):
    operation, calls = flaky(5)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        asyncio.run(engine.with_retry(operation, "op", retry_config={"max_retries": 0}))

    assert calls["count"] == 1
    assert sleeps.delays == []
    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value.last_error, ConnectionError)
    assert exc_info.value.__cause__ is exc_info.value.last_error


def test_exhaustion_after_max_retries(engine, sleeps):
    operation, calls = flaky(10)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        asyncio.run(engine.with_retry(operation, "op", retry_config={"max_retries": 2}))

    assert calls["count"] == 3
    assert len(sleeps.delays) == 2
    assert str(exc_info.value.last_error) == "failure 3"
    assert engine.states["op"] == RetryState.FAILED
    assert get_metrics_collector().get_counter("retries_exhausted_total", {"operation": "op"}) == 1


def test_quota_denials_are_not_retried(engine, sleeps):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        raise QuotaExceededError("minute", {"reason": "Per-minute limit exceeded"})

    with pytest.raises(QuotaExceededError):
        asyncio.run(engine.with_retry(operation, "op"))

    assert calls["count"] == 1
    assert sleeps.delays == []


def test_timeout_counts_as_failed_attempt(engine, sleeps):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] == 1:
            await asyncio.sleep(10)
        return "late but fine"

    result = asyncio.run(engine.with_retry(operation, "op", timeout=0.01))

    assert result == "late but fine"
    assert calls["count"] == 2
    assert len(sleeps.delays) == 1


def test_timeout_on_every_attempt_exhausts(engine):
    async def operation():
        await asyncio.sleep(10)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        asyncio.run(engine.with_retry(operation, "op", retry_config={"max_retries": 1}, timeout=0.01))

    assert isinstance(exc_info.value.last_error, OperationTimeoutError)


def test_sync_operations_run_in_a_thread(engine, sleeps):
    calls = {"count": 0}

    def operation():
        calls["count"] += 1
        if calls["count"] < 2:
            raise ValueError("transient")
        return "sync ok"

    assert asyncio.run(engine.with_retry(operation, "op")) == "sync ok"
    assert len(sleeps.delays) == 1


def test_cancellation_during_wait_stops_retrying():
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        raise ConnectionError("down")

    async def scenario():
        engine = RetryEngine(config_with_long_waits())
        task = asyncio.create_task(engine.with_retry(operation, "op"))
        while engine.states.get("op") != RetryState.WAITING:
            await asyncio.sleep(0)
        assert engine.is_recovering
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return engine

    started = time.monotonic()
    engine = asyncio.run(scenario())

    assert calls["count"] == 1
    assert time.monotonic() - started < 5
    assert "op" not in engine.states
    assert not engine.is_recovering


def config_with_long_waits():
    return RetryConfig(base_delay=60.0, max_delay=60.0, max_jitter=0.0)


def test_decorator_retries_with_overrides(sleeps):
    from quota_orchestrator.reliability import retry as retry_module

    engine = RetryEngine(sleep=sleeps)
    calls = {"count": 0}

    @retry_with_backoff(operation_key="decorated", max_retries=1)
    async def fetch(value):
        calls["count"] += 1
        raise ConnectionError(value)

    original = retry_module._retry_engine
    retry_module._retry_engine = engine
    try:
        with pytest.raises(RetriesExhaustedError):
            asyncio.run(fetch("boom"))
    finally:
        retry_module._retry_engine = original

    assert calls["count"] == 2
    assert len(sleeps.delays) == 1
    assert engine.states["decorated"] == RetryState.FAILED


def test_module_level_with_retry_uses_global_engine(sleeps):
    from quota_orchestrator.reliability import retry as retry_module

    operation, calls = flaky(1)
    original = retry_module._retry_engine
    retry_module._retry_engine = RetryEngine(sleep=sleeps)
    try:
        assert asyncio.run(retry_module.with_retry(operation, "global-op")) == "ok"
        assert retry_module.get_retry_engine().attempts["global-op"] == 0
    finally:
        retry_module._retry_engine = original

    assert len(sleeps.delays) == 1


def test_operation_timeout_error_is_not_relabelled(engine):
    async def operation():
        raise TimeoutError("socket read timed out")

    with pytest.raises(RetriesExhaustedError) as exc_info:
        asyncio.run(engine.with_retry(operation, "op", retry_config={"max_retries": 0}, timeout=5.0))

    assert type(exc_info.value.last_error) is TimeoutError
    assert str(exc_info.value.last_error) == "socket read timed out"


def test_engine_deadline_raises_operation_timeout(engine):
    async def operation():
        await asyncio.sleep(10)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        asyncio.run(engine.with_retry(operation, "op", retry_config={"max_retries": 0}, timeout=0.01))

    assert isinstance(exc_info.value.last_error, OperationTimeoutError)
    assert exc_info.value.last_error.timeout == 0.01
