from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Protocol

from idea_engine.extraction.cleanup import find_missing_fields
from idea_engine.extraction.extractor import (
    ParseResult,
    Strategy,
    StructuredOutputExtractor,
)
from idea_engine.llm_client.base import GenerationClient, GenerationResult, Source
from idea_engine.logging import get_logger
from idea_engine.pipeline.context import PipelineContext
from idea_engine.pipeline.stages import StageDefinition
from idea_engine.utils.error_taxonomy import (
    ErrorCode,
    build_error_details,
    classify_generation_error,
    is_retryable_generation_exception,
)
from idea_engine.utils.retry import run_with_retry

logger = get_logger("pipeline.stage")

StageStatus = Literal["ok", "fallback", "failed"]


class InstructionSource(Protocol):
    def system_instruction(self, prompt_name: str) -> str: ...


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Tagged result of one stage: ``ok``, ``fallback`` (degraded) or ``failed``."""

    stage: str
    status: StageStatus
    value: Any = None
    error_code: ErrorCode | None = None
    reason: str | None = None
    strategy: Strategy | None = None
    prompt: str = ""
    raw_text: str | None = None
    parse: ParseResult | None = None
    sources: tuple[Source, ...] = ()
    usage_normalized: dict[str, int | None] = field(default_factory=dict)
    cost: dict[str, Any] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    attempts: int = 1

    @property
    def usable(self) -> bool:
        return self.status != "failed"


class StageRunner:
    """Runs one stage: prompt, generation call with retry, extraction.

    Expected failures come back as a ``failed`` or ``fallback`` outcome rather
    than an exception. Configuration errors such as a missing prompt directory
    still raise.
    """

    def __init__(
        self,
        *,
        client: GenerationClient,
        extractor: StructuredOutputExtractor,
        instructions: InstructionSource,
        stage_overrides: Mapping[str, Mapping[str, Any]] | None = None,
        max_retries: int = 1,
        retry_base_delay_seconds: float = 2.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._extractor = extractor
        self._instructions = instructions
        self._stage_overrides = dict(stage_overrides or {})
        self._max_retries = max_retries
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._sleep_fn = sleep_fn

    def execute(
        self,
        stage: StageDefinition,
        context: PipelineContext,
        *,
        guidance: str | None = None,
        extra_inputs: Mapping[str, Any] | None = None,
        label: str | None = None,
    ) -> StageOutcome:
        run_label = label or stage.name
        inputs = context.select(stage.requires)
        for key in stage.extra_inputs:
            if extra_inputs is not None and key in extra_inputs:
                inputs[key] = extra_inputs[key]

        prompt = stage.build_prompt(inputs, guidance)
        system_instruction = self._instructions.system_instruction(stage.prompt_name)
        sampling = stage.sampling.with_overrides(self._stage_overrides.get(stage.name, {}))

        started_at = time.perf_counter()
        attempts = 0

        def call() -> GenerationResult:
            nonlocal attempts
            attempts += 1
            return self._client.generate(
                prompt=prompt,
                system_instruction=system_instruction,
                sampling=sampling,
            )

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            logger.warning(
                "Retrying %s after transient error (attempt %s, delay %.1fs): %s",
                run_label,
                attempt,
                delay,
                error,
                extra={"stage": run_label},
            )

        try:
            result = run_with_retry(
                operation=call,
                should_retry=is_retryable_generation_exception,
                max_retries=self._max_retries,
                base_delay_seconds=self._retry_base_delay_seconds,
                sleep_fn=self._sleep_fn,
                on_retry=on_retry,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Generation failed for %s: %s",
                run_label,
                build_error_details(error),
                extra={"stage": run_label},
            )
            return self._fallback_or_fail(
                stage,
                inputs,
                error_code=classify_generation_error(error),
                reason=f"{error.__class__.__name__}: {error}",
                prompt=prompt,
                elapsed_ms=_elapsed_ms(started_at),
                attempts=attempts,
            )

        common: dict[str, Any] = {
            "prompt": prompt,
            "raw_text": result.text,
            "sources": tuple(result.sources),
            "usage_normalized": result.usage_normalized,
            "cost": result.cost,
            "attempts": attempts,
        }

        if not result.has_text:
            reason = "no response" if result.text is None else "empty response"
            logger.warning(
                "Generation returned %s for %s (finish_reason=%s)",
                reason,
                run_label,
                result.finish_reason,
                extra={"stage": run_label},
            )
            return self._fallback_or_fail(
                stage,
                inputs,
                error_code="GENERATION_EMPTY",
                reason=reason,
                elapsed_ms=_elapsed_ms(started_at),
                **common,
            )

        text = result.text or ""
        if stage.output_format == "text":
            return StageOutcome(
                stage=stage.name,
                status="ok",
                value=text.strip(),
                elapsed_ms=_elapsed_ms(started_at),
                **common,
            )

        fallback_value = stage.fallback(inputs) if stage.fallback is not None else None
        parse = self._extractor.extract(
            text,
            stage.required_fields,
            fallback_value,
            schema_hint=stage.schema_hint,
            context_label=run_label,
        )
        elapsed_ms = _elapsed_ms(started_at)

        if parse.genuine:
            return StageOutcome(
                stage=stage.name,
                status="ok",
                value=parse.value,
                strategy=parse.strategy,
                parse=parse,
                elapsed_ms=elapsed_ms,
                **common,
            )

        error_code = _parse_error_code(parse)
        return StageOutcome(
            stage=stage.name,
            status="fallback" if parse.used_fallback else "failed",
            value=parse.value if parse.used_fallback else None,
            error_code=error_code,
            reason=parse.error,
            strategy=parse.strategy,
            parse=parse,
            elapsed_ms=elapsed_ms,
            **common,
        )

    def _fallback_or_fail(
        self,
        stage: StageDefinition,
        inputs: Mapping[str, Any],
        *,
        error_code: ErrorCode,
        reason: str,
        prompt: str,
        elapsed_ms: float,
        attempts: int,
        raw_text: str | None = None,
        sources: tuple[Source, ...] = (),
        usage_normalized: dict[str, int | None] | None = None,
        cost: dict[str, Any] | None = None,
    ) -> StageOutcome:
        value = stage.fallback(inputs) if stage.fallback is not None else None
        if value is not None and stage.output_format == "json":
            missing = find_missing_fields(value, stage.required_fields)
            if missing:
                logger.warning(
                    "Fallback for %s is missing required fields: %s",
                    stage.name,
                    ", ".join(missing),
                    extra={"stage": stage.name},
                )
                value = None
                reason = f"{reason}; fallback missing required fields: {', '.join(missing)}"
        return StageOutcome(
            stage=stage.name,
            status="fallback" if value is not None else "failed",
            value=value,
            error_code=error_code,
            reason=reason,
            strategy="fallback" if value is not None else None,
            prompt=prompt,
            raw_text=raw_text,
            sources=sources,
            usage_normalized=usage_normalized or {},
            cost=cost or {},
            elapsed_ms=elapsed_ms,
            attempts=attempts,
        )


def _parse_error_code(parse: ParseResult) -> ErrorCode:
    for attempt in parse.diagnostics:
        if attempt.error and attempt.error.startswith("missing required fields"):
            return "OUTPUT_MISSING_FIELDS"
    return "OUTPUT_INVALID_JSON"


def _elapsed_ms(started_at: float) -> float:
    return (time.perf_counter() - started_at) * 1000
