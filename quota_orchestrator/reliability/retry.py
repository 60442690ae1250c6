import asyncio
import dataclasses
import functools
import inspect
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from quota_orchestrator.errors import OperationTimeoutError, QuotaExceededError, RetriesExhaustedError
from quota_orchestrator.observability.tracing import get_tracer, trace_span, add_span_attributes
from quota_orchestrator.ratelimit.metrics import record_retries_exhausted, record_retry_attempt

logger = logging.getLogger(__name__)
tracer = get_tracer("reliability.retry")


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy for one operation. Delays are in seconds.

    Attempt n (1-based) that fails waits
    min(base_delay * backoff_multiplier ** (n - 1), max_delay) plus a
    random jitter in [0, max_jitter) before attempt n + 1.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    max_jitter: float = 1.0
    # Quota denials are the caller's decision to retry, never ours
    non_retryable: Tuple[Type[BaseException], ...] = (QuotaExceededError,)

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "RetryConfig":
        """Return a copy with the given fields overridden."""
        if not overrides:
            return self
        return dataclasses.replace(self, **overrides)


DEFAULT_RETRY_CONFIG = RetryConfig()


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def backoff_delay(attempt: int, config: RetryConfig, rand: Callable[[], float] = random.random) -> float:
    """Delay to wait after failed attempt `attempt` (1-based)."""
    delay = min(config.base_delay * config.backoff_multiplier ** (attempt - 1), config.max_delay)
    return delay + rand() * config.max_jitter


class RetryEngine:
    """
    Runs an operation with bounded retries, exponential backoff with jitter
    and an optional per-attempt timeout.

    The wait between attempts and the timeout race are the only suspension
    points. Both are plain awaits, so cancelling the surrounding task stops
    the engine without scheduling another attempt; cancellation is never
    treated as a retryable failure.

    `attempts` maps operation keys to the attempt in flight (0 once an
    operation succeeds). It is advisory progress reporting only.
    """

    def __init__(
        self,
        default_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.default_config = default_config
        self.sleep = sleep
        self.rand = rand
        self.attempts: Dict[str, int] = {}
        self.states: Dict[str, RetryState] = {}

    @property
    def is_recovering(self) -> bool:
        return any(state in (RetryState.ATTEMPTING, RetryState.WAITING) for state in self.states.values())

    async def with_retry(
        self,
        operation: Callable[[], Any],
        operation_key: str,
        retry_config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Run `operation` until it succeeds or the retry budget is spent.

        Args:
            operation: Zero-argument callable; coroutine functions are awaited,
                plain callables run in a worker thread
            operation_key: Name used for logging and progress tracking
            retry_config: Partial override of the engine's RetryConfig fields
            timeout: Optional per-attempt timeout in seconds

        Raises:
            RetriesExhaustedError: After max_retries + 1 failed attempts; the
                last error is chained and available as `last_error`
            QuotaExceededError (and other non_retryable types): immediately
        """
        config = self.default_config.merged(retry_config)
        attempt = 1

        with trace_span(tracer, "retry.with_retry", attributes={"retry.operation": operation_key}) as span:
            try:
                while True:
                    self._transition(operation_key, RetryState.ATTEMPTING, attempt)
                    try:
                        result = await self._run_attempt(operation, operation_key, timeout)
                    except config.non_retryable:
                        self._transition(operation_key, RetryState.FAILED, attempt)
                        raise
                    except Exception as e:
                        record_retry_attempt(operation_key)
                        logger.warning(
                            f"Attempt {attempt}/{config.max_retries + 1} failed for {operation_key}: {e}"
                        )

                        if attempt > config.max_retries:
                            self._transition(operation_key, RetryState.FAILED, attempt)
                            record_retries_exhausted(operation_key)
                            add_span_attributes(span, {"retry.attempts": attempt, "retry.exhausted": True})
                            raise RetriesExhaustedError(operation_key, attempt, e) from e

                        delay = backoff_delay(attempt, config, self.rand)
                        logger.info(
                            f"Retrying {operation_key} in {delay:.2f}s "
                            f"(attempt {attempt + 1}/{config.max_retries + 1})"
                        )
                        self._transition(operation_key, RetryState.WAITING, attempt)
                        await self.sleep(delay)
                        attempt += 1
                        continue

                    self._transition(operation_key, RetryState.SUCCEEDED, 0)
                    add_span_attributes(span, {"retry.attempts": attempt})
                    return result

            except asyncio.CancelledError:
                logger.info(f"Retry loop for {operation_key} cancelled at attempt {attempt}")
                self.states.pop(operation_key, None)
                self.attempts.pop(operation_key, None)
                raise

    async def _run_attempt(self, operation: Callable[[], Any], operation_key: str, timeout: Optional[float]) -> Any:
        if inspect.iscoroutinefunction(operation):
            pending = operation()
        else:
            pending = self._run_sync(operation)

        if timeout is None:
            return await pending

        task = asyncio.ensure_future(pending)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            raise OperationTimeoutError(operation_key, timeout)
        # Errors raised by the operation itself, TimeoutError included, pass through unchanged
        return task.result()

    @staticmethod
    async def _run_sync(operation: Callable[[], Any]) -> Any:
        result = await asyncio.to_thread(operation)
        # Lambdas and partials wrapping coroutine functions hand back an awaitable
        if inspect.isawaitable(result):
            result = await result
        return result

    def _transition(self, operation_key: str, state: RetryState, attempt: int) -> None:
        self.states[operation_key] = state
        self.attempts[operation_key] = attempt


# Global engine instance
_retry_engine: Optional[RetryEngine] = None


def get_retry_engine() -> RetryEngine:
    global _retry_engine

    if _retry_engine is None:
        _retry_engine = RetryEngine()

    return _retry_engine


async def with_retry(
    operation: Callable[[], Any],
    operation_key: str,
    retry_config: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Run `operation` through the global RetryEngine."""
    return await get_retry_engine().with_retry(operation, operation_key, retry_config, timeout)


def retry_with_backoff(
    operation_key: Optional[str] = None,
    timeout: Optional[float] = None,
    **retry_config
):
    """
    Decorator for exponential backoff retry logic on async functions.

    Args:
        operation_key: Tracking key; defaults to the function's qualified name
        timeout: Optional per-attempt timeout in seconds
        **retry_config: RetryConfig overrides (max_retries, base_delay, ...)

    Usage:
        @retry_with_backoff(max_retries=2, timeout=30)
        async def search_companies(query):
            ...
    """
    def decorator(func: Callable):
        key = operation_key or func.__qualname__

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await get_retry_engine().with_retry(
                functools.partial(func, *args, **kwargs),
                key,
                retry_config=retry_config or None,
                timeout=timeout,
            )

        return async_wrapper
    return decorator
