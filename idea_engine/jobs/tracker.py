from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from idea_engine.logging import get_logger
from idea_engine.storage.db import connection, init_db
from idea_engine.storage.models import TERMINAL_JOB_STATUSES, JobRecord, JobStatus
from idea_engine.utils.error_taxonomy import JobStateError

logger = get_logger("jobs.tracker")


class JobTracker(Protocol):
    def create(
        self,
        job_id: str,
        *,
        trigger: str,
        user_id: str | None = None,
        directive: str | None = None,
    ) -> JobRecord: ...

    def start(self, job_id: str) -> JobRecord: ...

    def update(self, job_id: str, step: str, message: str) -> JobRecord: ...

    def complete(self, job_id: str, artifact_ids: Iterable[str]) -> JobRecord: ...

    def fail(
        self, job_id: str, message: str, *, error_code: str | None = None
    ) -> JobRecord: ...

    def read(self, job_id: str) -> JobRecord: ...


def _is_locked_error(error: BaseException) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "locked" in str(error).lower()


class SQLiteJobTracker:
    """Durable job status records shared by trigger handlers and pollers.

    Status moves PENDING -> RUNNING -> COMPLETED | FAILED. Progress updates are
    accepted while PENDING or RUNNING; any mutation of a terminal record raises
    JobStateError. Each mutation is its own short write transaction, so a
    reader never sees a half-applied change.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout_seconds: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self._timeout = busy_timeout_seconds
        init_db(self.db_path)

    def create(
        self,
        job_id: str,
        *,
        trigger: str,
        user_id: str | None = None,
        directive: str | None = None,
    ) -> JobRecord:
        if not job_id.strip():
            raise ValueError("job_id must be a non-empty string")
        timestamp = _utc_now()

        def write(conn: sqlite3.Connection) -> None:
            existing = conn.execute(
                "SELECT status FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if existing is not None:
                raise JobStateError(f"Job already exists: {job_id}")
            conn.execute(
                """
                INSERT INTO jobs (
                    job_id, status, trigger, user_id, directive,
                    artifact_ids_json, created_at, updated_at
                )
                VALUES (?, 'PENDING', ?, ?, ?, '[]', ?, ?)
                """,
                (job_id, trigger, user_id, directive, timestamp, timestamp),
            )

        self._write(write)
        logger.info("Job created", extra={"job_id": job_id, "trigger": trigger})
        return self.read(job_id)

    def start(self, job_id: str) -> JobRecord:
        self._transition(
            job_id,
            allowed_from=("PENDING",),
            assignments={"status": "RUNNING"},
        )
        return self.read(job_id)

    def update(self, job_id: str, step: str, message: str) -> JobRecord:
        self._transition(
            job_id,
            allowed_from=("PENDING", "RUNNING"),
            assignments={"current_step": step, "progress_message": message},
        )
        return self.read(job_id)

    def complete(self, job_id: str, artifact_ids: Iterable[str]) -> JobRecord:
        ids = [str(item) for item in artifact_ids]
        self._transition(
            job_id,
            allowed_from=("RUNNING",),
            assignments={
                "status": "COMPLETED",
                "artifact_ids_json": json.dumps(ids),
                "error_code": None,
                "error_message": None,
            },
        )
        logger.info(
            "Job completed",
            extra={"job_id": job_id, "metrics": {"artifact_count": len(ids)}},
        )
        return self.read(job_id)

    def fail(
        self, job_id: str, message: str, *, error_code: str | None = None
    ) -> JobRecord:
        self._transition(
            job_id,
            allowed_from=("PENDING", "RUNNING"),
            assignments={
                "status": "FAILED",
                "error_code": error_code,
                "error_message": message,
            },
        )
        logger.info(
            "Job failed: %s",
            message,
            extra={"job_id": job_id, "error_code": error_code},
        )
        return self.read(job_id)

    def read(self, job_id: str) -> JobRecord:
        with connection(self.db_path, timeout=self._timeout) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()

        if row is None:
            raise KeyError(f"Job not found: {job_id}")
        return _row_to_job_record(row)

    def get_status(self, job_id: str) -> JobRecord:
        return self.read(job_id)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        query = "SELECT * FROM jobs"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(limit, 1))

        with connection(self.db_path, timeout=self._timeout) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_job_record(row) for row in rows]

    def _transition(
        self,
        job_id: str,
        *,
        allowed_from: tuple[JobStatus, ...],
        assignments: dict[str, Any],
    ) -> None:
        def write(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT status FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Job not found: {job_id}")

            current = str(row["status"])
            if current in TERMINAL_JOB_STATUSES:
                raise JobStateError(f"Job {job_id} is already {current}")
            if current not in allowed_from:
                raise JobStateError(
                    f"Job {job_id} cannot change from {current} with this operation"
                )

            columns = list(assignments)
            set_clause = ", ".join(f"{column} = ?" for column in columns)
            conn.execute(
                f"UPDATE jobs SET {set_clause}, updated_at = ? WHERE job_id = ?",
                (*(assignments[column] for column in columns), _utc_now(), job_id),
            )

        self._write(write)

    def _write(self, operation: Callable[[sqlite3.Connection], None]) -> None:
        @retry(
            retry=retry_if_exception(_is_locked_error),
            stop=stop_after_attempt(5),
            wait=wait_exponential(multiplier=0.05, max=1),
            reraise=True,
        )
        def run() -> None:
            with connection(self.db_path, timeout=self._timeout) as conn:
                conn.execute("BEGIN IMMEDIATE")
                operation(conn)

        run()


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _row_to_job_record(row: Any) -> JobRecord:
    try:
        artifact_ids = json.loads(str(row["artifact_ids_json"] or "[]"))
    except json.JSONDecodeError:
        artifact_ids = []
    if not isinstance(artifact_ids, list):
        artifact_ids = []

    return JobRecord(
        job_id=str(row["job_id"]),
        status=row["status"],
        trigger=str(row["trigger"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        current_step=row["current_step"],
        progress_message=row["progress_message"],
        artifact_ids=tuple(str(item) for item in artifact_ids),
        error_code=row["error_code"],
        error_message=row["error_message"],
        user_id=row["user_id"],
        directive=row["directive"],
    )
