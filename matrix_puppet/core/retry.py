"""
Retry utilities for session start.

Session start has no internal retry loop; callers that want one wrap it with
retry_with_backoff, which retries only the exception types it is given.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from matrix_puppet.core.errors import PuppetConnectionError

logger = logging.getLogger("matrix_puppet.retry")

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """
    Raised when an operation still fails with a retryable error after
    all retry attempts.
    """
    def __init__(self, operation: str, attempts: int, last_error: Optional[Exception] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} still failing after {attempts} attempts"
        )


async def retry_with_backoff(
    func: Callable[[], Any],
    operation: str = "operation",
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retry_on: Tuple[Type[BaseException], ...] = (PuppetConnectionError,),
    logger_instance: Optional[logging.Logger] = None,
) -> Any:
    """
    Execute a function, retrying with exponential backoff.

    Uses delays of base_delay * 2**attempt, capped at max_delay.

    Args:
        func: The async or sync function to execute (awaited if it returns a coroutine)
        operation: Name used in log lines and in RetryExhaustedError
        max_retries: Number of retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        retry_on: Exception types that trigger a retry
        logger_instance: Optional logger (uses module logger if not provided)

    Returns:
        The result of the function call

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error
        Exception: Any non-retryable exception from the function
    """
    log = logger_instance or logger
    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            result = func()
            if asyncio.iscoroutine(result):
                result = await result
            return result

        except retry_on as e:
            last_error = e
            if attempt < max_retries:
                delay = min(base_delay * (2 ** attempt), max_delay)
                log.warning(
                    f"[RETRY] {operation} failed, "
                    f"attempt {attempt + 1}/{max_retries + 1}, "
                    f"retrying in {delay:.1f}s",
                    extra={"error": str(e)},
                )
                await asyncio.sleep(delay)
                continue

            log.error(
                f"[RETRY] {operation} failed after {max_retries + 1} attempts, giving up",
                extra={"error": str(e)},
            )
            raise RetryExhaustedError(
                operation=operation,
                attempts=max_retries + 1,
                last_error=e,
            ) from e

    raise RetryExhaustedError(
        operation=operation,
        attempts=max_retries + 1,
        last_error=last_error,
    )
