from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .utils import log_event

T = TypeVar("T")


def _always(_: BaseException) -> bool:
    return True


def backoff_delay(
    attempt: int,
    base_delay: float,
    *,
    strategy: str = "linear",
    max_delay: float | None = None,
) -> float:
    if strategy == "exponential":
        delay = base_delay * (2 ** (attempt - 1))
    else:
        delay = base_delay * attempt
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def retry_call(
    func: Callable[[int], T],
    *,
    max_attempts: int,
    base_delay: float,
    is_retryable: Callable[[BaseException], bool] = _always,
    strategy: str = "linear",
    max_delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
    label: str = "call",
) -> T:
    """Call ``func(attempt)`` until it returns, with a fixed attempt ceiling.

    Delays are in seconds. ``attempt`` is 1-based so callers can rotate over
    endpoint aliases. Non-retryable exceptions propagate immediately; the last
    exception propagates once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 1
    while True:
        try:
            return func(attempt)
        except Exception as exc:
            if attempt >= max_attempts or not is_retryable(exc):
                raise
            delay = backoff_delay(attempt, base_delay, strategy=strategy, max_delay=max_delay)
            if logger is not None:
                log_event(
                    logger,
                    logging.INFO,
                    "retry_scheduled",
                    label=label,
                    attempt=attempt,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
            sleep(delay)
            attempt += 1
