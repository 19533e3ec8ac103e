# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Retry and backoff for transient oracle transport failures.

Only the transport layer of an oracle client uses this. Cancellation is
never retried: asyncio.CancelledError is not an Exception subclass and
passes straight through the wrapper, and callers are expected to leave
their own cancellation and timeout errors out of ``retryable_exceptions``.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar, ParamSpec, Optional, Type
from functools import wraps
from companion.logging import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar('T')
P = ParamSpec('P')


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retryable_exceptions: Optional[tuple[Type[Exception], ...]] = None
    ):
        """Initialize retry configuration.

        Args:
            max_retries: Maximum number of retry attempts (0 disables retries)
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds (caps exponential growth)
            retryable_exceptions: Tuple of exception types that should trigger retries.
                                 If None, all exceptions are retryable.
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retryable_exceptions = retryable_exceptions or (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate retry delay using exponential backoff.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds, capped at max_delay
        """
        delay = self.base_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        """Check if an exception should trigger a retry."""
        return isinstance(exception, self.retryable_exceptions)


def with_retry(config: RetryConfig, operation_name: str):
    """Decorator to add retry logic to async functions.

    Args:
        config: RetryConfig specifying retry behavior
        operation_name: Human-readable name for the operation (for logging)

    Returns:
        Decorator function

    Example:
        >>> retry_config = RetryConfig(max_retries=2, base_delay=0.5)
        >>> @with_retry(retry_config, "oracle_call")
        >>> async def call_oracle():
        ...     pass
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not config.is_retryable(e):
                        logger.warning(
                            f"{operation_name} failed with non-retryable exception",
                            error_type=type(e).__name__,
                            error=str(e),
                            attempt=attempt + 1
                        )
                        raise

                    if attempt >= config.max_retries:
                        logger.error(
                            f"{operation_name} failed after {config.max_retries} retries",
                            error_type=type(e).__name__,
                            error=str(e),
                            total_attempts=attempt + 1
                        )
                        raise

                    attempt += 1
                    delay = config.calculate_delay(attempt)
                    logger.warning(
                        f"{operation_name} failed, retrying in {delay:.2f}s",
                        error_type=type(e).__name__,
                        error=str(e),
                        attempt=attempt,
                        max_retries=config.max_retries,
                        retry_delay_seconds=delay
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator
