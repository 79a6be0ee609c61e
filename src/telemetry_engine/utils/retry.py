"""Retry decorator used around durable-store writes."""

from __future__ import annotations

import logging
import time
from functools import wraps
from typing import Callable, Optional, ParamSpec, Tuple, Type, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def retry(
    *,
    attempts: int = 3,
    delay: float = 0.1,
    backoff: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Optional[Callable[[float], None]] = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Retry decorator with exponential backoff.

    The final failure is re-raised unchanged so callers can keep whatever
    state they already hold and try again later.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    pause = sleep or time.sleep

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            current_delay = delay
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as exc:
                    if attempt == attempts:
                        raise
                    logger.warning(
                        "retrying_after_failure",
                        extra={
                            "function": func.__qualname__,
                            "attempt": attempt,
                            "delay": current_delay,
                            "error": str(exc),
                        },
                    )
                    pause(current_delay)
                    current_delay *= backoff
            raise RuntimeError("retry exhausted without result")  # pragma: no cover

        return wrapper

    return decorator
