"""Retry decorator with exponential backoff."""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts, at least one
        base_delay: Base delay in seconds (doubles each attempt)
        exceptions: Tuple of exception types to catch

    Returns:
        Decorated coroutine function with retry logic
    """
    attempts = max(1, max_attempts)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts - 1:
                        logger.error(f"All {attempts} attempts of {func.__name__} failed: {e}")
                        raise
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{attempts} of {func.__name__} failed: {e}. "
                        f"Retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper  # type: ignore

    return decorator
