# backend/tipu/utils/retry.py
"""Exponential backoff helper for calls to flaky external providers."""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay after the ``attempt``-th failure (1-based): base, 2x base, 4x base, ..."""
    return base_delay * (2 ** (attempt - 1))


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """
    Call ``operation`` up to ``max_attempts`` times.

    Waits ``base_delay * 2**(n-1)`` seconds after the n-th failure and
    re-raises the last error once attempts are exhausted. Errors outside
    ``retry_on`` propagate immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    label = description or getattr(operation, "__name__", "operation")
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            if attempt == max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
