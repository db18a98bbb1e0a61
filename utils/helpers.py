"""
General Helper Utilities

Common utility functions used across the project.

Author: GG
Date: 2025-09-16
"""

import asyncio
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple, Type, Union

logger = logging.getLogger(__name__)


def generate_task_id() -> str:
    """
    Generate an opaque processing task identifier.

    The millisecond prefix keeps ids roughly sortable in logs.

    Returns:
        Task id such as ``task_1726470000000_3f9c2a1b0``.
    """
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves up (round() rounds halves to even)."""
    return int(math.floor(value + 0.5))


def round_to(value: float, places: int = 2) -> float:
    factor = 10 ** places
    return round_half_up(value * factor) / factor


async def retry_with_backoff(
    coro_func,
    *args,
    max_retries=3,
    delay=1.0,
    backoff=2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs,
):
    """
    Retry asynchronous function with exponential backoff.

    Args:
        coro_func: Async function to retry.
        max_retries: Maximum attempts.
        delay: Initial delay seconds.
        backoff: Exponential backoff multiplier.
        retry_on: Exception types that trigger another attempt.
        *args: Positional args for coro_func.
        **kwargs: Keyword args for coro_func.

    Returns:
        coro_func result.

    Raises:
        Last exception if all retries fail.
    """
    attempt = 0
    current_delay = delay
    while True:
        try:
            return await coro_func(*args, **kwargs)
        except retry_on as e:
            attempt += 1
            if attempt >= max_retries:
                raise
            logger.warning(
                f"Attempt {attempt}/{max_retries} of {getattr(coro_func, '__name__', coro_func)} "
                f"failed: {e}; retrying in {current_delay:.2f}s"
            )
            await asyncio.sleep(current_delay)
            current_delay *= backoff


def ensure_directories(paths: Union[str, Path, list]) -> None:
    """
    Ensure given directory path(s) exist, create if missing.

    Args:
        paths: Single path or list of paths to ensure.

    Raises:
        OSError: If directory cannot be created.
    """
    if isinstance(paths, (str, Path)):
        paths = [paths]

    for path in paths:
        p = Path(path)
        p.mkdir(parents=True, exist_ok=True)
