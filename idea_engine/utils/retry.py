from __future__ import annotations

import time
from typing import Callable, TypeVar

T = TypeVar("T")


def run_with_retry(
    *,
    operation: Callable[[], T],
    should_retry: Callable[[Exception], bool],
    max_retries: int = 1,
    base_delay_seconds: float = 0.2,
    max_delay_seconds: float | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, float, Exception], None] | None = None,
) -> T:
    """Call ``operation`` until it succeeds, retrying only what ``should_retry`` accepts.

    Delay doubles per attempt starting at ``base_delay_seconds`` and is capped
    by ``max_delay_seconds`` when given. The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:  # noqa: BLE001
            if attempt >= max_retries or not should_retry(error):
                raise

            delay = base_delay_seconds * (2**attempt)
            if max_delay_seconds is not None:
                delay = min(delay, max_delay_seconds)
            if on_retry is not None:
                on_retry(attempt + 1, delay, error)
            sleep_fn(delay)
            attempt += 1
