from __future__ import annotations

import time
from typing import Callable, Protocol

from idea_engine.storage.models import JobRecord


class JobReader(Protocol):
    def read(self, job_id: str) -> JobRecord: ...


def poll_job(
    tracker: JobReader,
    job_id: str,
    *,
    interval_seconds: float = 0.5,
    timeout_seconds: float | None = None,
    on_update: Callable[[JobRecord], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> JobRecord:
    """Read a job repeatedly until it reaches COMPLETED or FAILED.

    ``on_update`` is called whenever the step or progress message changes.
    Raises TimeoutError when ``timeout_seconds`` elapses first.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    deadline = None if timeout_seconds is None else clock() + timeout_seconds
    last_seen: tuple[str, str | None, str | None] | None = None

    while True:
        record = tracker.read(job_id)
        marker = (record.status, record.current_step, record.progress_message)
        if on_update is not None and marker != last_seen:
            on_update(record)
        last_seen = marker

        if record.is_terminal:
            return record

        if deadline is not None and clock() >= deadline:
            raise TimeoutError(
                f"Job {job_id} still {record.status} after {timeout_seconds}s"
            )
        sleep_fn(interval_seconds)
