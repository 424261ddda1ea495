"""Bounded retry with exponential backoff for upstream calls."""

import random
import threading
import time
from typing import Callable, Any, Optional, List, Type

from .exceptions import WorkflowEngineError, TransientError, ExecutionCancelledError
from .logging import get_logger, RetryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, ExecutionCancelledError):
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Calculate delay before the attempt following ``attempt``."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


class RetryExhaustedError(Exception):
    """Raised by ``execute_with_retry`` when every attempt failed with a retryable error."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def execute_with_retry(
    func: Callable[[], Any],
    config: RetryConfig,
    operation: str,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call ``func`` until it succeeds, a non-retryable error is raised, or attempts run out.

    Args:
        func: Zero-argument callable performing one attempt
        config: Retry policy
        operation: Name used in log messages
        cancel_event: Optional event; when set, retrying stops with ExecutionCancelledError
        sleep: Sleep function, injectable for tests

    Returns:
        The result of the first successful attempt

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error
        Exception: Any non-retryable error raised by ``func``
    """
    retry_logger = RetryLogger(operation)

    for attempt in range(1, config.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelledError(f"Cancelled before {operation}")
        try:
            result = func()
            if attempt > 1:
                retry_logger.log_recovery(operation, attempt)
            return result
        except Exception as e:
            retryable = config.should_retry(e, attempt)
            if not retryable:
                if attempt >= config.max_attempts and _is_retryable_type(e, config):
                    retry_logger.log_exhausted(operation, e, attempt)
                    raise RetryExhaustedError(operation, attempt, e) from e
                raise

            delay = config.get_delay(attempt, e)
            retry_logger.log_retry_attempt(operation, e, attempt, config.max_attempts, delay)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise ExecutionCancelledError(f"Cancelled while retrying {operation}")
            else:
                sleep(delay)

    # unreachable: the final attempt either returns or raises
    raise RuntimeError(f"{operation}: retry loop exited unexpectedly")


def _is_retryable_type(error: Exception, config: RetryConfig) -> bool:
    if isinstance(error, ExecutionCancelledError):
        return False
    if isinstance(error, WorkflowEngineError):
        return error.recoverable
    return any(isinstance(error, exc_type) for exc_type in config.retryable_exceptions)
