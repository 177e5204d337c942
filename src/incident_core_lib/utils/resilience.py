"""Resilience utilities for the incident stage engine.

Standard retry policies for transient failures. Only reads (case loads,
startup connections) are retried here; content saves are never retried
automatically, the caller decides.
"""

import logging
from typing import Callable, Tuple, Type, TypeVar, Union

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Standard retry policy for service startup connections
# - Wait 2^x * 1 seconds between retries (2s, 4s, 8s, 16s, 32s)
# - Stop after 5 attempts (total ~62s wait time)
# - Log warnings before sleeping
# - Re-raise the exception if all retries fail
service_startup_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=32),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def create_custom_retry(
    max_attempts: int = 5,
    min_wait: float = 2,
    max_wait: float = 32,
    multiplier: float = 1,
    retry_on: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Create a custom retry decorator with specific parameters.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        multiplier: Exponential backoff multiplier
        retry_on: Exception type(s) worth retrying; anything else propagates at once

    Returns:
        A retry decorator configured with the specified parameters

    Example:
        ```python
        load_retry = create_custom_retry(max_attempts=3, min_wait=0.5, max_wait=4, retry_on=TransportError)

        @load_retry
        async def load():
            return await transport.get_case(case_id)
        ```
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
