"""Retry decorator with exponential backoff."""

import asyncio
import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retry number ``attempt + 1`` (0-based attempt index)."""
    return base_delay * (2**attempt)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for exponential backoff retry logic.

    Args:
        max_attempts: Total attempts including the first (1 disables retrying)
        base_delay: Base delay in seconds (doubles each attempt)
        exceptions: Exception types that may trigger a retry
        retry_if: Optional predicate consulted for every caught exception;
            returning False re-raises it without further attempts

    Returns:
        Decorated coroutine function with retry logic
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, "__qualname__", repr(func))

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        logger.debug(f"{name}: not retrying {type(e).__name__}: {e}")
                        raise
                    if attempt >= max_attempts - 1:
                        logger.error(f"{name}: all {max_attempts} attempts failed: {e}")
                        raise
                    delay = backoff_delay(base_delay, attempt)
                    logger.warning(
                        f"{name}: attempt {attempt + 1}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper  # type: ignore

    return decorator
