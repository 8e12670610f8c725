"""
Retry utilities for handling throttling and transient failures.

This module provides the tagged error type raised at the remote-call boundary,
the classification rules that decide whether a failure is worth retrying, and
the exponential backoff policy used for invite and membership operations.
"""

import enum
import time
import random
import logging
from typing import Callable, Any, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_STATUS_CODES = (429, 503, 504)


class ErrorKind(enum.Enum):
    """Classification tag carried by RetryableError."""
    TIMEOUT = 'timeout'
    RATE_LIMITED = 'rate-limited'
    SERVER_ERROR = 'server-error'
    CLIENT_ERROR = 'client-error'
    IO = 'io'


class RetryableError(Exception):
    """
    Error raised at the remote-call boundary, tagged for retry classification.

    Attributes:
        kind: ErrorKind describing the failure
        status_code: HTTP-like status code, None when the failure had no response
        retry_after: Server-provided wait hint in seconds (0 when absent)
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.IO,
                 status_code: Optional[int] = None, retry_after: float = 0.0):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after = max(0.0, float(retry_after or 0.0))

    @property
    def transient(self) -> bool:
        """True if this failure is expected to go away on its own."""
        if self.status_code is not None:
            return is_retryable_status(self.status_code)
        return self.kind in (ErrorKind.TIMEOUT, ErrorKind.IO,
                             ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR)

    @classmethod
    def from_status(cls, status_code: int, message: str, retry_after: float = 0.0) -> 'RetryableError':
        """Build an error whose kind is derived from an HTTP status code."""
        return cls(message, kind=kind_for_status(status_code),
                   status_code=status_code, retry_after=retry_after)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception,
                 operation: str = 'operation', key: str = ''):
        self.attempts = attempts
        self.last_exception = last_exception
        self.operation = operation
        self.key = key
        self.retryable = True
        super().__init__(f"{operation} failed after {attempts} attempts "
                         f"(key={key}, retryable=True): {last_exception}")


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code onto an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if 500 <= status_code <= 599:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.CLIENT_ERROR


def is_retryable_status(status_code: int) -> bool:
    """429, 503, 504 and any other 5xx are retryable."""
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code <= 599


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Timeouts are always retryable. Errors carrying a status code are retryable
    only for throttling and server errors. Status-free I/O errors are retryable.
    Anything else is fatal.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, TimeoutError):
        return True

    if isinstance(exception, RetryableError):
        return exception.transient

    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int):
        return is_retryable_status(status_code)

    # ConnectionError and socket errors are OSError subclasses
    return isinstance(exception, OSError)


def compute_backoff(attempt: int, base_delay: float, max_delay: float,
                    jitter: float, retry_after: float = 0.0) -> float:
    """
    Compute the wait before the next attempt.

    Attempt ``a`` (1-indexed) waits ``min(max_delay, base * 2^min(6, a-1) + jitter)``
    where jitter is uniform in ``[0, jitter)``. A server hint wins when larger.
    """
    exponent = min(6, max(0, attempt - 1))
    delay = base_delay * (2 ** exponent)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    delay = min(max_delay, delay)
    if retry_after and retry_after > delay:
        delay = retry_after
    return delay


class RetryPolicy:
    """
    Retry policy for remote directory operations.

    Retries are local to a single call; there is no coordination between
    concurrent callers.
    """

    def __init__(self, max_attempts: int = 7, base_delay: float = 0.5,
                 max_delay: float = 30.0, jitter: float = 0.35,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0 or jitter < 0:
            raise ValueError("delays must not be negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> 'RetryPolicy':
        """Create a policy from SyncSettings."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter
        )

    def with_retry(self, operation: str, key: str, func: Callable[[], T]) -> T:
        """
        Call ``func`` until it succeeds, fails fatally, or attempts run out.

        Args:
            operation: Operation name used in log messages
            key: Correlation key (email, user id, group id) used in log messages
            func: Zero-argument callable performing the remote call

        Returns:
            The value returned by ``func``

        Raises:
            MaxRetriesExceeded: If a retryable failure persisted for every attempt
            Exception: The original exception for a non-retryable failure
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func()
                if attempt > 1:
                    logger.info(f"{operation} succeeded key={key} on attempt {attempt}/{self.max_attempts}")
                return result

            except Exception as e:
                status_code = getattr(e, 'status_code', None)

                if not is_retryable_error(e):
                    logger.error(f"{operation} FAILED key={key} status={status_code} "
                                 f"attempt={attempt}/{self.max_attempts} retryable=False "
                                 f"exType={type(e).__name__} msg={e}")
                    raise

                if attempt == self.max_attempts:
                    logger.error(f"{operation} FAILED key={key} status={status_code} "
                                 f"attempt={attempt}/{self.max_attempts} retryable=True "
                                 f"exType={type(e).__name__} msg={e}")
                    raise MaxRetriesExceeded(attempt, e, operation, key) from e

                delay = compute_backoff(attempt, self.base_delay, self.max_delay,
                                        self.jitter, getattr(e, 'retry_after', 0.0))
                logger.warning(f"{operation} RETRY key={key} status={status_code} "
                               f"attempt={attempt}/{self.max_attempts} sleep={delay:.2f}s ex={e}")
                self._sleep(delay)

        raise AssertionError("unreachable")
