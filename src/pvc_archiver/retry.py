from __future__ import annotations

import time
from typing import Callable, TypeVar

T = TypeVar("T")


def backoff_delays(attempts: int, base_delay_seconds: float) -> list[float]:
    """Delays slept between ``attempts`` tries: base, 2*base, 4*base, ..."""
    return [base_delay_seconds * (2**index) for index in range(max(0, attempts - 1))]


def call_with_backoff(
    operation: Callable[[int], T],
    *,
    attempts: int,
    base_delay_seconds: float,
    is_retryable: Callable[[Exception], bool],
    sleep: Callable[[float], object] = time.sleep,
    on_retry: Callable[[int, float, Exception], None] | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or the attempt ceiling is hit.

    Only errors accepted by ``is_retryable`` are retried; anything else, and
    the error from the final attempt, propagates unchanged.
    """
    total_attempts = max(1, attempts)
    delays = backoff_delays(total_attempts, base_delay_seconds)
    for attempt in range(1, total_attempts + 1):
        try:
            return operation(attempt)
        except Exception as error:  # pylint: disable=broad-except
            if attempt >= total_attempts or not is_retryable(error):
                raise
            delay = delays[attempt - 1]
            if on_retry is not None:
                on_retry(attempt, delay, error)
            sleep(delay)
    raise AssertionError("unreachable")
