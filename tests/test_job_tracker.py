from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from idea_engine.jobs.tracker import SQLiteJobTracker, _is_locked_error
from idea_engine.utils.error_taxonomy import JobStateError


def test_job_lifecycle_pending_running_completed(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")

    created = tracker.create("req-1", trigger="on_demand", user_id="u-1", directive="pets")
    assert created.status == "PENDING"
    assert created.user_id == "u-1"
    assert created.directive == "pets"
    assert created.artifact_ids == ()

    started = tracker.start("req-1")
    assert started.status == "RUNNING"

    updated = tracker.update("req-1", "Trend Research", "Analyzing market trends...")
    assert updated.current_step == "Trend Research"
    assert updated.progress_message == "Analyzing market trends..."

    completed = tracker.complete("req-1", ["idea-1", "idea-2"])
    assert completed.status == "COMPLETED"
    assert completed.artifact_ids == ("idea-1", "idea-2")
    assert completed.is_terminal is True
    assert tracker.get_status("req-1") == completed


def test_progress_is_accepted_while_pending(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("req-1", trigger="scheduled")

    record = tracker.update("req-1", "Initializing", "Preparing...")

    assert record.status == "PENDING"
    assert record.current_step == "Initializing"


def test_terminal_job_rejects_every_mutation(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("req-1", trigger="manual")
    tracker.start("req-1")
    failed = tracker.fail("req-1", "Failed to generate ideas.", error_code="STAGE_FAILED")

    assert failed.status == "FAILED"
    assert failed.error_code == "STAGE_FAILED"
    assert failed.error_message == "Failed to generate ideas."

    with pytest.raises(JobStateError):
        tracker.update("req-1", "Trend Research", "late update")
    with pytest.raises(JobStateError):
        tracker.complete("req-1", ["idea-1"])
    with pytest.raises(JobStateError):
        tracker.fail("req-1", "again")
    with pytest.raises(JobStateError):
        tracker.start("req-1")

    assert tracker.read("req-1").error_message == "Failed to generate ideas."


def test_complete_requires_running_status(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("req-1", trigger="manual")

    with pytest.raises(JobStateError, match="cannot change from PENDING"):
        tracker.complete("req-1", ["idea-1"])


def test_create_rejects_duplicates_and_blank_ids(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("req-1", trigger="manual")

    with pytest.raises(JobStateError, match="already exists"):
        tracker.create("req-1", trigger="manual")
    with pytest.raises(ValueError):
        tracker.create("  ", trigger="manual")


def test_unknown_job_raises_key_error(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")

    with pytest.raises(KeyError):
        tracker.read("missing")
    with pytest.raises(KeyError):
        tracker.update("missing", "step", "message")


def test_list_jobs_filters_by_status(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("a", trigger="scheduled")
    tracker.create("b", trigger="scheduled")
    tracker.start("b")

    running = tracker.list_jobs(status="RUNNING")

    assert [record.job_id for record in running] == ["b"]
    assert len(tracker.list_jobs()) == 2


def test_concurrent_readers_see_whole_updates(tmp_path: Path) -> None:
    tracker = SQLiteJobTracker(tmp_path / "jobs.sqlite3")
    tracker.create("req-1", trigger="on_demand")
    tracker.start("req-1")
    pairs = [(f"Step {index}", f"Message {index}") for index in range(20)]
    observed: list[tuple[str | None, str | None]] = []
    done = threading.Event()

    def reader() -> None:
        while not done.is_set():
            record = tracker.read("req-1")
            observed.append((record.current_step, record.progress_message))

    thread = threading.Thread(target=reader)
    thread.start()
    for step, message in pairs:
        tracker.update("req-1", step, message)
    done.set()
    thread.join()

    allowed = set(pairs) | {(None, None)}
    assert all(item in allowed for item in observed)


def test_locked_error_detection() -> None:
    assert _is_locked_error(sqlite3.OperationalError("database is locked")) is True
    assert _is_locked_error(sqlite3.OperationalError("no such table: jobs")) is False
    assert _is_locked_error(RuntimeError("locked")) is False
