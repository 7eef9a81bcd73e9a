"""
Retry utilities with exponential backoff for async functions.

This module provides a decorator for retrying transient failures of
async calls (query service restarts, dropped connections, overloaded
nodes) with exponential backoff, while letting permanent failures
propagate on the first attempt.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class RetryableError(Exception):
    """
    Exception that should be retried with exponential backoff.

    Used for transient, temporary failures that may succeed on retry:
    - Connection refused / reset while a query node restarts
    - HTTP 503 or 429 from an overloaded query service
    - Server errors explicitly flagged as retryable in the response envelope

    Production Pattern:
    except httpx.ConnectError as e:
        raise RetryableError(f"Query service unreachable: {str(e)}") from e
    """
    pass


class NonRetryableError(Exception):
    """
    Exception that should NOT be retried.

    Used for permanent, deterministic failures that won't change on retry:
    - Authentication and authorization failures (wrong credentials)
    - SQL++ syntax errors and semantic errors
    - Constraint violations (duplicate document key)
    - Configuration errors (missing or malformed settings)
    """
    pass


DEFAULT_RETRY_ON: Tuple[Type[BaseException], ...] = (
    RetryableError,
    httpx.TransportError,
    asyncio.TimeoutError,
)


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = DEFAULT_RETRY_ON,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Callable[[F], F]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts, first call included (default: 3)
        base_delay: Initial delay in seconds between retries (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 10.0)
        retry_on: Exception types treated as transient
        on_retry: Optional callback invoked with (attempt, error) before each wait

    Returns:
        Decorated async function with retry logic

    Example:
        @async_retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
        async def fetch_rows():
            return await client.post('/query/service', json=body)

    Error Handling:
    - NonRetryableError: Raised immediately without retry
    - Types listed in retry_on: Retried up to max_attempts times
    - Any other exception: Raised immediately without retry

    Backoff Strategy:
    - Uses exponential backoff: delay = base_delay * (2 ^ attempt)
    - Capped at max_delay to prevent excessive waiting
    - Logs warning for each retry attempt
    - Logs error when all retries exhausted, then re-raises the last error
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def decorator(func: Callable) -> Callable:
        name = getattr(func, "__name__", repr(func))

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)

                except NonRetryableError:
                    raise

                except retry_on as e:
                    if attempt >= max_attempts - 1:
                        logger.error(
                            f"All {max_attempts} attempts failed for {name}. "
                            f"Final error: {str(e)}"
                        )
                        raise

                    delay = min(base_delay * (2 ** attempt), max_delay)
                    logger.warning(
                        f"Retry attempt {attempt + 1}/{max_attempts} for {name}. "
                        f"Error: {str(e)}. Waiting {delay:.2f}s..."
                    )
                    if on_retry is not None:
                        on_retry(attempt + 1, e)
                    await asyncio.sleep(delay)

            # unreachable: the last attempt either returns or raises
            raise RuntimeError(f"Retry loop exited without result for {name}")

        return wrapper
    return decorator
