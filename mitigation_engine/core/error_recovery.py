"""Retry and circuit-breaker helpers shared by storage and collaborator calls."""

import time
import random
import threading
from enum import Enum
from typing import Callable, Any, Optional, List, Type
from functools import wraps

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, RetryEventLogger


logger = get_logger(__name__)


class RetryConfig:
    """Backoff schedule and retry eligibility.

    The storage repositories wrap their writes with ``with_retry(RetryConfig)``;
    the execution engine only borrows ``get_delay`` to space out step retries.

    Args:
        max_attempts: Total calls allowed, the first one included.
        base_delay: Delay before the second attempt, in seconds. ``0`` disables waiting.
        max_delay: Upper bound for any single delay.
        exponential_base: Growth factor between consecutive delays.
        jitter: Scale each delay by a random factor in ``[0.5, 1.0)``.
        retryable_exceptions: Exception types worth another attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (TransientError, StorageError))

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        # Engine errors carry their own verdict.
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based attempt failed."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay


class BreakerState(str, Enum):
    """States of a circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Stops calling a collaborator (notifier, action executor) that keeps failing.

    After ``failure_threshold`` consecutive failures the breaker opens and every
    call fails fast with ``TransientError``. Once ``recovery_timeout`` seconds
    have passed a single trial call is let through; its outcome closes or
    re-opens the breaker.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Type[Exception] = Exception,
        name: str = "circuit_breaker"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()
        self._events = RetryEventLogger(name)

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def __call__(self, func: Callable) -> Callable:
        @wraps(func)
        def guarded(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return guarded

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Invoke ``func`` unless the breaker is open."""
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self):
        with self._lock:
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._opened_at = None

    def _before_call(self):
        with self._lock:
            if self._state != BreakerState.OPEN:
                return
            remaining = self._opened_at + self.recovery_timeout - time.monotonic()
            if remaining > 0:
                raise TransientError(
                    f"Circuit breaker '{self.name}' is open; retry in {remaining:.1f}s",
                    context={"breaker": self.name, "failures": self._failures}
                )
            self._state = BreakerState.HALF_OPEN
            logger.info(f"Circuit breaker '{self.name}' allowing a trial call")

    def _record_success(self):
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' closed again")
            self._state = BreakerState.CLOSED
            self._failures = 0

    def _record_failure(self):
        with self._lock:
            self._failures += 1
            trial_failed = self._state == BreakerState.HALF_OPEN
            if trial_failed or self._failures >= self.failure_threshold:
                self._state = BreakerState.OPEN
                self._opened_at = time.monotonic()
                self._events.circuit_opened(self._failures)


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated callable according to ``config``."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        events = RetryEventLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        if attempt > 1:
                            events.gave_up(func.__name__, e, attempt)
                        raise
                    events.retrying(func.__name__, e, attempt, config.max_attempts)
                    delay = config.get_delay(attempt)
                    if delay > 0:
                        time.sleep(delay)
                    attempt += 1
                    continue
                if attempt > 1:
                    events.recovered(func.__name__, attempt)
                return result

        return wrapper

    return decorator
