from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from idea_engine.jobs.tracker import JobTracker
from idea_engine.logging import get_logger, log_context
from idea_engine.pipeline import steps
from idea_engine.pipeline.artifact import GenerationRequest
from idea_engine.pipeline.orchestrator import CancelSignal, IdeaPipelineOrchestrator
from idea_engine.pipeline.steps import GenerationStep
from idea_engine.utils.error_taxonomy import (
    JobStateError,
    PipelineCancelled,
    PipelineFailure,
    build_error_details,
    classify_pipeline_error,
)

logger = get_logger("pipeline.triggers")

NO_IDEAS_MESSAGE = "No ideas were successfully generated"


@dataclass(frozen=True, slots=True)
class BatchSummary:
    total_requested: int
    success_count: int
    error_count: int
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRequested": self.total_requested,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "results": self.results,
        }


def run_scheduled_batch(
    orchestrator: IdeaPipelineOrchestrator,
    *,
    batch_size: int = 4,
    delay_seconds: float = 10.0,
    novelty_window_hours: int = 24,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> BatchSummary:
    """Generate ``batch_size`` ideas, one job each.

    A failed idea is logged and counted; the batch carries on with the next.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    previous = orchestrator.recent_titles(since_hours=novelty_window_hours)
    results: list[dict[str, Any]] = []
    success_count = 0

    with log_context(trigger="scheduled"):
        for index in range(batch_size):
            if index > 0 and delay_seconds > 0:
                sleep_fn(delay_seconds)

            request = GenerationRequest(
                trigger="scheduled",
                previous_ideas=tuple(previous),
            )
            try:
                run = orchestrator.run(request)
            except PipelineFailure as failure:
                logger.error(
                    "Scheduled idea %s/%s failed: %s",
                    index + 1,
                    batch_size,
                    failure,
                    extra={"error_code": failure.error_code, "stage": failure.stage},
                )
                results.append(
                    {
                        "index": index + 1,
                        "success": False,
                        "errorCode": failure.error_code,
                        "error": str(failure),
                    }
                )
                continue

            success_count += 1
            previous.append(run.artifact.title)
            results.append(
                {
                    "index": index + 1,
                    "success": True,
                    "jobId": run.job_id,
                    "ideaId": run.artifact_id,
                    "title": run.artifact.title,
                    "degradedStages": list(run.artifact.degraded_stages),
                }
            )

    summary = BatchSummary(
        total_requested=batch_size,
        success_count=success_count,
        error_count=batch_size - success_count,
        results=results,
    )
    logger.info(
        "Scheduled batch finished: %s/%s ideas generated",
        success_count,
        batch_size,
        extra={"trigger": "scheduled", "metrics": summary.to_dict()},
    )
    return summary


def run_on_demand(
    orchestrator: IdeaPipelineOrchestrator,
    tracker: JobTracker,
    *,
    request_id: str,
    directive: str,
    user_id: str | None = None,
    batch_size: int = 3,
    delay_seconds: float = 10.0,
    cancel_event: CancelSignal | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Generate up to ``batch_size`` ideas for one user request under one job.

    The job is COMPLETED with every persisted idea id when at least one idea
    succeeded; otherwise it is FAILED and PipelineFailure is raised.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    if not directive.strip():
        raise ValueError("directive must be a non-empty string")

    _open_job(tracker, request_id, directive=directive, user_id=user_id)
    artifact_ids: list[str] = []
    titles: list[str] = []

    with log_context(job_id=request_id, trigger="on_demand"):
        for index in range(batch_size):
            if index > 0 and delay_seconds > 0:
                sleep_fn(delay_seconds)

            number = index + 1
            _safe_update(tracker, request_id, steps.idea_progress_step(number, batch_size))
            request = GenerationRequest(
                trigger="on_demand",
                user_directive=directive,
                user_id=user_id,
                previous_ideas=tuple(titles),
            )
            try:
                artifact = orchestrator.generate(
                    request,
                    job_id=request_id,
                    progress=lambda step: _safe_update(tracker, request_id, step),
                    cancel_event=cancel_event,
                    diagnostics_key=f"{request_id}-{number}",
                )
                artifact_ids.append(orchestrator.persist(artifact))
                titles.append(artifact.title)
            except PipelineCancelled as cancelled:
                logger.warning("On-demand generation cancelled: %s", cancelled)
                break
            except Exception as error:  # noqa: BLE001
                logger.error(
                    "Idea %s/%s failed: %s",
                    number,
                    batch_size,
                    build_error_details(error),
                    extra={"error_code": classify_pipeline_error(error)},
                )
                continue

        if artifact_ids:
            _safe_update(tracker, request_id, steps.completion_step(len(artifact_ids)))
            tracker.complete(request_id, artifact_ids)
            logger.info(
                "On-demand request finished with %s/%s ideas",
                len(artifact_ids),
                batch_size,
                extra={"metrics": {"artifact_ids": artifact_ids}},
            )
            return artifact_ids

        failure = (
            PipelineCancelled()
            if cancel_event is not None and cancel_event.is_set()
            else PipelineFailure("STAGE_FAILED", NO_IDEAS_MESSAGE)
        )
        _safe_update(tracker, request_id, steps.FAILED)
        tracker.fail(request_id, failure.friendly_message, error_code=failure.error_code)
        raise failure


def _open_job(
    tracker: JobTracker,
    request_id: str,
    *,
    directive: str,
    user_id: str | None,
) -> None:
    try:
        record = tracker.read(request_id)
    except KeyError:
        record = tracker.create(
            request_id,
            trigger="on_demand",
            user_id=user_id,
            directive=directive,
        )
    if record.is_terminal:
        raise JobStateError(f"Job {request_id} is already {record.status}")
    if record.status == "PENDING":
        tracker.start(request_id)
    _safe_update(tracker, request_id, steps.STARTING_RESEARCH)


def _safe_update(tracker: JobTracker, job_id: str, step: GenerationStep) -> None:
    try:
        tracker.update(job_id, step.step, step.message)
    except Exception as error:  # noqa: BLE001
        logger.warning(
            "Progress update failed for step %s: %s",
            step.step,
            build_error_details(error),
            extra={"job_id": job_id},
        )
