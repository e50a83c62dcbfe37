"""Timing helpers for pipeline stages."""

import functools
import time
from typing import Any, Callable

from .logger import LOGGER


def elapsed_ms(start: float) -> float:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return (time.perf_counter() - start) * 1000.0


def time_function(func: Callable) -> Callable:
    """Decorator to time function execution."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            LOGGER.info("⏱️  %s took %.1fms", func.__name__, elapsed_ms(start))
    return wrapper


def time_async_function(func: Callable) -> Callable:
    """Decorator to time async function execution."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            LOGGER.info("⏱️  %s took %.1fms", func.__name__, elapsed_ms(start))
    return wrapper


__all__ = ["elapsed_ms", "time_async_function", "time_function"]
