from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

JobStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED"})


@dataclass(frozen=True, slots=True)
class JobRecord:
    job_id: str
    status: JobStatus
    trigger: str
    created_at: str
    updated_at: str
    current_step: str | None = None
    progress_message: str | None = None
    artifact_ids: tuple[str, ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    user_id: str | None = None
    directive: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(frozen=True, slots=True)
class IdeaRecord:
    idea_id: str
    title: str
    description: str
    trigger: str
    created_at: str
    why_now_id: str
    idea_score_id: str
    monetization_id: str
    what_to_build_id: str | None
    job_id: str | None = None
    user_id: str | None = None
    directive: str | None = None
    degraded_stages: tuple[str, ...] = ()
    review_warnings: tuple[str, ...] = ()
    full_idea: dict[str, Any] | None = None
