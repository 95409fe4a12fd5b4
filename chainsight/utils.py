"""
Utility functions for the chainsight pipeline.

This module provides:
- Retry with exponential backoff for coroutines
- Numeric helpers
- Filesystem helpers
"""

import asyncio
import math
import logging
from typing import Any, Callable, Optional, Union
from functools import wraps
from pathlib import Path

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    giveup: tuple = (),
    on_retry: Optional[Callable[[Exception, int], None]] = None
):
    """
    Retry decorator with exponential backoff for coroutine functions.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by for each retry
        exceptions: Tuple of exceptions to catch and retry on
        giveup: Exceptions re-raised immediately even if they match ``exceptions``
        on_retry: Optional callback function called on each retry
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except giveup:
                    raise
                except exceptions as e:
                    last_exception = e

                    if attempt < max_attempts:
                        current_delay = delay * (backoff_factor ** (attempt - 1))
                        current_delay = min(current_delay, 60)

                        logger.warning(
                            f"Attempt {attempt}/{max_attempts} failed for {func.__name__}. "
                            f"Retrying in {current_delay:.2f}s. Error: {str(e)}"
                        )

                        if on_retry:
                            on_retry(e, attempt)

                        await asyncio.sleep(current_delay)

            logger.error(
                f"All {max_attempts} attempts failed for {func.__name__}. "
                f"Final error: {str(last_exception)}"
            )
            raise last_exception
        return wrapper
    return decorator


def to_float(value: Any) -> Optional[float]:
    """
    Coerce a provider value to float.

    Returns None for missing, boolean, non-numeric or non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value)
        except ValueError:
            return None
    else:
        return None
    return result if math.isfinite(result) else None


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to directory

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
