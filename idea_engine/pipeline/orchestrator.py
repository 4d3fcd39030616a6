from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol
from uuid import uuid4

from idea_engine.jobs.tracker import JobTracker
from idea_engine.llm_client.base import Source
from idea_engine.llm_client.cost import total_cost_usd
from idea_engine.llm_client.normalize_usage import merge_usage
from idea_engine.logging import get_logger, log_context
from idea_engine.pipeline import steps
from idea_engine.pipeline.artifact import GeneratedArtifact, GenerationRequest
from idea_engine.pipeline.context import PipelineContext
from idea_engine.pipeline.idea_review import problem_titles, review_idea
from idea_engine.pipeline.stage_runner import StageOutcome, StageRunner
from idea_engine.pipeline.stages import (
    PipelineStages,
    StageDefinition,
    default_stages,
    validate_stage_order,
)
from idea_engine.pipeline.steps import GenerationStep
from idea_engine.pipeline.validate_output import ValidationResult, validate_artifact
from idea_engine.storage.artifacts import JobArtifacts, JobArtifactsManager
from idea_engine.storage.repo import ArtifactStore
from idea_engine.storage.run_manifest import init_run_manifest, update_run_manifest
from idea_engine.utils.error_taxonomy import (
    ErrorCode,
    JobStateError,
    PipelineCancelled,
    PipelineFailure,
    build_error_details,
    classify_pipeline_error,
)

logger = get_logger("pipeline.orchestrator")

ProgressCallback = Callable[[GenerationStep], None]

SYNTHESIS_DRAFT_LABEL = "idea_synthesis.pass1"
SYNTHESIS_FINAL_LABEL = "idea_synthesis.final"


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class PipelineRun:
    job_id: str
    artifact_id: str
    artifact: GeneratedArtifact


class _RunLedger:
    """Collects per-stage outcomes for degradation flags, sources and cost."""

    def __init__(self) -> None:
        self.outcomes: list[StageOutcome] = []
        self.degraded_stages: list[str] = []

    def record(self, outcome: StageOutcome, *, counts_as_degraded: bool = True) -> None:
        self.outcomes.append(outcome)
        if counts_as_degraded and outcome.status == "fallback":
            if outcome.stage not in self.degraded_stages:
                self.degraded_stages.append(outcome.stage)

    def sources(self) -> tuple[Source, ...]:
        seen: set[str] = set()
        collected: list[Source] = []
        for outcome in self.outcomes:
            for source in outcome.sources:
                if source.url in seen:
                    continue
                seen.add(source.url)
                collected.append(source)
        return tuple(collected)

    def usage(self) -> dict[str, int | None]:
        return merge_usage(outcome.usage_normalized for outcome in self.outcomes)

    def cost_usd(self) -> float:
        return total_cost_usd(outcome.cost for outcome in self.outcomes)


class IdeaPipelineOrchestrator:
    """Runs the staged research flow and owns the job record for a run.

    Research stages run strictly in order against a write-once context. A
    load-bearing stage with no usable output aborts the run before any later
    stage is called; an advisory stage leaves its slot absent. Synthesis runs
    twice, with the critique text from the first draft fed verbatim into the
    second pass. Only the second pass is validated and persisted.
    """

    def __init__(
        self,
        *,
        runner: StageRunner,
        tracker: JobTracker,
        store: ArtifactStore,
        stages: PipelineStages | None = None,
        artifacts_manager: JobArtifactsManager | None = None,
        artifact_schema: dict[str, Any] | None = None,
    ) -> None:
        self.stages = stages or default_stages()
        validate_stage_order(self.stages.all())
        self._runner = runner
        self._tracker = tracker
        self._store = store
        self._artifacts_manager = artifacts_manager
        self._artifact_schema = artifact_schema

    def run(
        self,
        request: GenerationRequest,
        *,
        job_id: str | None = None,
        cancel_event: CancelSignal | None = None,
    ) -> PipelineRun:
        """Create or resume a job record, generate one idea and persist it."""
        resolved_job_id = job_id or str(uuid4())
        self._prepare_job(resolved_job_id, request)

        with log_context(job_id=resolved_job_id, trigger=request.trigger):
            try:
                artifact = self.generate(
                    request,
                    job_id=resolved_job_id,
                    progress=lambda step: self._safe_progress(resolved_job_id, step),
                    cancel_event=cancel_event,
                )
                self._safe_progress(resolved_job_id, steps.SAVING_RESULTS)
                artifact_id = self.persist(artifact)
                self._tracker.complete(resolved_job_id, [artifact_id])
            except PipelineFailure as failure:
                self._mark_failed(resolved_job_id, failure)
                raise
            except Exception as error:
                failure = PipelineFailure(
                    classify_pipeline_error(error), build_error_details(error)
                )
                self._mark_failed(resolved_job_id, failure)
                raise failure from error

        logger.info(
            "Idea persisted",
            extra={
                "job_id": resolved_job_id,
                "trigger": request.trigger,
                "metrics": {"degraded_stages": list(artifact.degraded_stages)},
            },
        )
        return PipelineRun(
            job_id=resolved_job_id,
            artifact_id=artifact_id,
            artifact=artifact,
        )

    def generate(
        self,
        request: GenerationRequest,
        *,
        job_id: str | None = None,
        progress: ProgressCallback | None = None,
        cancel_event: CancelSignal | None = None,
        diagnostics_key: str | None = None,
    ) -> GeneratedArtifact:
        """Run every stage and return a validated artifact without persisting it."""
        resolved_job_id = job_id or str(uuid4())
        context = PipelineContext(
            user_directive=request.user_directive,
            previous_ideas=request.previous_ideas,
        )
        ledger = _RunLedger()
        job_artifacts = self._init_diagnostics(
            resolved_job_id, request, diagnostics_key or resolved_job_id
        )
        _emit(progress, steps.STARTING_RESEARCH)

        try:
            for stage in self.stages.research:
                _check_cancelled(cancel_event, stage.name)
                _emit(progress, stage.step)
                outcome = self._execute(stage, context, job_artifacts=job_artifacts)
                ledger.record(outcome)
                self._apply_outcome(stage, outcome, context)

            artifact = self._synthesize(
                request,
                context,
                ledger,
                job_id=resolved_job_id,
                job_artifacts=job_artifacts,
                progress=progress,
                cancel_event=cancel_event,
            )
        except PipelineFailure as failure:
            self._finish_diagnostics(
                job_artifacts,
                {
                    "status": "failed",
                    "error_code": failure.error_code,
                    "error_message": str(failure),
                    "degraded_stages": ledger.degraded_stages,
                },
            )
            raise

        self._finish_diagnostics(
            job_artifacts,
            {
                "status": "generated",
                "degraded_stages": list(artifact.degraded_stages),
                "review_warnings": list(artifact.review_warnings),
                "metrics": {
                    "usage_normalized": artifact.usage_normalized,
                    "cost_usd": artifact.cost_usd,
                },
            },
        )
        return artifact

    def _synthesize(
        self,
        request: GenerationRequest,
        context: PipelineContext,
        ledger: _RunLedger,
        *,
        job_id: str,
        job_artifacts: JobArtifacts | None,
        progress: ProgressCallback | None,
        cancel_event: CancelSignal | None,
    ) -> GeneratedArtifact:
        synthesis = self.stages.synthesis
        critique_stage = self.stages.critique

        _check_cancelled(cancel_event, synthesis.name)
        _emit(progress, synthesis.step)
        draft = self._execute(
            synthesis, context, job_artifacts=job_artifacts, label=SYNTHESIS_DRAFT_LABEL
        )
        ledger.record(draft, counts_as_degraded=False)
        if not draft.usable:
            raise _stage_failure(synthesis, draft)

        _check_cancelled(cancel_event, critique_stage.name)
        _emit(progress, critique_stage.step)
        critique = self._execute(
            critique_stage,
            context,
            job_artifacts=job_artifacts,
            extra_inputs={"draft_idea": draft.value},
        )
        ledger.record(critique)
        guidance = critique.value if critique.status == "ok" else None
        if guidance is None:
            logger.warning(
                "Critique unavailable, final synthesis runs without guidance: %s",
                critique.reason,
                extra={"stage": critique_stage.name, "error_code": critique.error_code},
            )

        _check_cancelled(cancel_event, synthesis.name)
        _emit(progress, steps.FINAL_REFINEMENT)
        final = self._execute(
            synthesis,
            context,
            job_artifacts=job_artifacts,
            guidance=guidance,
            label=SYNTHESIS_FINAL_LABEL,
        )
        ledger.record(final)
        if not final.usable:
            raise _stage_failure(synthesis, final)

        idea: dict[str, Any] = final.value
        validation = validate_artifact(idea=idea, schema=self._artifact_schema)
        self._finish_diagnostics(job_artifacts, {"validation": _validation_payload(validation)})
        if not validation.valid:
            raise PipelineFailure(
                "ARTIFACT_INVALID",
                "Synthesized idea failed validation: " + "; ".join(validation.errors),
                stage=synthesis.name,
            )

        warnings = review_idea(idea, problem_titles(context.get("problem_gaps")))
        for warning in warnings:
            logger.warning("Idea review: %s", warning, extra={"stage": synthesis.name})

        return GeneratedArtifact(
            idea=idea,
            trends=context.get("trends") or {},
            problem_gaps=context.get("problem_gaps") or {},
            competitive=context.get("competitive") or {},
            monetization=context.get("monetization") or {},
            what_to_build=context.get("what_to_build"),
            research_direction=context.get("research_direction"),
            critique=guidance,
            sources=ledger.sources(),
            degraded_stages=tuple(ledger.degraded_stages),
            review_warnings=tuple(warnings),
            job_id=job_id,
            trigger=request.trigger,
            user_id=request.user_id,
            user_directive=request.user_directive,
            usage_normalized=ledger.usage(),
            cost_usd=ledger.cost_usd(),
        )

    def _execute(
        self,
        stage: StageDefinition,
        context: PipelineContext,
        *,
        job_artifacts: JobArtifacts | None,
        guidance: str | None = None,
        extra_inputs: dict[str, Any] | None = None,
        label: str | None = None,
    ) -> StageOutcome:
        run_label = label or stage.name
        with log_context(stage=run_label):
            outcome = self._runner.execute(
                stage,
                context,
                guidance=guidance,
                extra_inputs=extra_inputs,
                label=run_label,
            )
            logger.info(
                "Stage %s finished with status %s",
                run_label,
                outcome.status,
                extra={
                    "duration_ms": round(outcome.elapsed_ms, 1),
                    "strategy": outcome.strategy,
                    "error_code": outcome.error_code,
                },
            )
        self._record_stage_diagnostics(job_artifacts, run_label, outcome)
        return outcome

    def _apply_outcome(
        self,
        stage: StageDefinition,
        outcome: StageOutcome,
        context: PipelineContext,
    ) -> None:
        if stage.produces is None:
            return
        if outcome.usable and outcome.value is not None:
            context.set(stage.produces, outcome.value)
            return
        if stage.load_bearing:
            raise _stage_failure(stage, outcome)
        logger.warning(
            "Advisory stage %s produced nothing; continuing without %s",
            stage.name,
            stage.produces,
            extra={"stage": stage.name, "error_code": outcome.error_code},
        )
        context.mark_absent(stage.produces)

    def _prepare_job(self, job_id: str, request: GenerationRequest) -> None:
        try:
            record = self._tracker.read(job_id)
        except KeyError:
            record = self._tracker.create(
                job_id,
                trigger=request.trigger,
                user_id=request.user_id,
                directive=request.user_directive,
            )

        if record.is_terminal:
            raise JobStateError(f"Job {job_id} is already {record.status}")
        if record.status == "PENDING":
            self._tracker.start(job_id)
        self._safe_progress(job_id, steps.INITIALIZING)

    def persist(self, artifact: GeneratedArtifact) -> str:
        try:
            return self._store.save(artifact)
        except Exception as error:
            raise PipelineFailure(
                "STORAGE_ERROR",
                f"Failed to persist idea: {build_error_details(error)}",
            ) from error

    def recent_titles(self, *, since_hours: int = 24) -> list[str]:
        try:
            return self._store.recent_titles(since_hours=since_hours)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Could not load recent idea titles: %s",
                build_error_details(error),
                extra={"error_code": "STORAGE_ERROR"},
            )
            return []

    def _mark_failed(self, job_id: str, failure: PipelineFailure) -> None:
        logger.error(
            "Run failed: %s",
            failure,
            extra={"job_id": job_id, "stage": failure.stage, "error_code": failure.error_code},
        )
        try:
            self._tracker.fail(job_id, failure.friendly_message, error_code=failure.error_code)
        except Exception as error:  # noqa: BLE001
            logger.error(
                "Could not record job failure: %s",
                build_error_details(error),
                extra={"job_id": job_id, "error_code": "STORAGE_ERROR"},
            )

    def _safe_progress(self, job_id: str, step: GenerationStep) -> str | None:
        try:
            self._tracker.update(job_id, step.step, step.message)
            return None
        except Exception as error:  # noqa: BLE001
            details = build_error_details(error)
            logger.warning(
                "Progress update failed for step %s: %s",
                step.step,
                details,
                extra={"job_id": job_id},
            )
            return details

    def _init_diagnostics(
        self, job_id: str, request: GenerationRequest, diagnostics_key: str
    ) -> JobArtifacts | None:
        if self._artifacts_manager is None:
            return None
        try:
            job_artifacts = self._artifacts_manager.create_job_artifacts(diagnostics_key)
            init_run_manifest(
                artifacts_root_path=job_artifacts.artifacts_root_path,
                job_id=job_id,
                trigger=request.trigger,
                inputs={
                    "user_directive": request.user_directive,
                    "user_id": request.user_id,
                    "previous_ideas": list(request.previous_ideas),
                },
                stage_names=[stage.name for stage in self.stages.all()],
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Diagnostics disabled for this run: %s",
                build_error_details(error),
                extra={"job_id": job_id},
            )
            return None
        return job_artifacts

    def _record_stage_diagnostics(
        self,
        job_artifacts: JobArtifacts | None,
        label: str,
        outcome: StageOutcome,
    ) -> None:
        if job_artifacts is None or self._artifacts_manager is None:
            return
        try:
            stage_artifacts = self._artifacts_manager.create_stage_artifacts(
                artifacts_root_path=job_artifacts.artifacts_root_path,
                label=label,
            )
            stage_artifacts.request_path.write_text(outcome.prompt, encoding="utf-8")
            if outcome.raw_text is not None:
                stage_artifacts.response_raw_path.write_text(
                    outcome.raw_text, encoding="utf-8"
                )
            parse_payload = outcome.parse.summary() if outcome.parse is not None else {}
            stage_artifacts.parse_path.write_text(
                json.dumps(parse_payload, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except Exception as error:  # noqa: BLE001
            _safe_append_run_log(
                job_artifacts.run_log_path,
                f"Stage artifact write failed for {label}: {build_error_details(error)}",
            )

        _safe_append_run_log(
            job_artifacts.run_log_path,
            f"{label}: {outcome.status}"
            + (f" ({outcome.error_code}: {outcome.reason})" if outcome.error_code else ""),
        )
        _safe_update_manifest(
            artifacts_root_path=job_artifacts.artifacts_root_path,
            updates={
                "stages": {
                    label: {
                        "status": outcome.status,
                        "strategy": outcome.strategy,
                        "error_code": outcome.error_code,
                        "reason": outcome.reason,
                        "attempts": outcome.attempts,
                        "elapsed_ms": round(outcome.elapsed_ms, 1),
                    }
                }
            },
            run_log_path=job_artifacts.run_log_path,
        )

    def _finish_diagnostics(
        self, job_artifacts: JobArtifacts | None, updates: dict[str, Any]
    ) -> None:
        if job_artifacts is None:
            return
        _safe_update_manifest(
            artifacts_root_path=job_artifacts.artifacts_root_path,
            updates=updates,
            run_log_path=job_artifacts.run_log_path,
        )


def _emit(progress: ProgressCallback | None, step: GenerationStep) -> None:
    if progress is not None:
        progress(step)


def _check_cancelled(cancel_event: CancelSignal | None, stage_name: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled(f"Run cancelled before {stage_name}", stage=stage_name)


def _stage_failure(stage: StageDefinition, outcome: StageOutcome) -> PipelineFailure:
    cause: ErrorCode | str = outcome.error_code or "UNKNOWN_ERROR"
    return PipelineFailure(
        "STAGE_FAILED",
        f"Stage {stage.name} produced no usable output ({cause}: {outcome.reason})",
        stage=stage.name,
    )


def _validation_payload(validation: ValidationResult) -> dict[str, Any]:
    return {
        "valid": validation.valid,
        "errors": validation.errors,
    }


def _append_run_log(log_path: Path, message: str) -> None:
    with log_path.open("a", encoding="utf-8") as file:
        file.write(message)
        file.write("\n")


def _safe_append_run_log(log_path: Path, message: str) -> None:
    try:
        _append_run_log(log_path, message)
    except OSError as error:
        logger.warning("Run log write failed: %s", error)


def _safe_update_manifest(
    *,
    artifacts_root_path: Path,
    updates: dict[str, Any],
    run_log_path: Path,
) -> str | None:
    try:
        update_run_manifest(
            artifacts_root_path=artifacts_root_path,
            updates=updates,
        )
        return None
    except Exception as error:  # noqa: BLE001
        details = build_error_details(error)
        _safe_append_run_log(
            run_log_path,
            f"Manifest update failed: {details}",
        )
        return details
