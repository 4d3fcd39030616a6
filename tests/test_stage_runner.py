from __future__ import annotations

from typing import Any, Mapping

from idea_engine.extraction.extractor import StructuredOutputExtractor
from idea_engine.llm_client.base import GenerationResult, SamplingConfig, Source
from idea_engine.pipeline import steps
from idea_engine.pipeline.context import PipelineContext
from idea_engine.pipeline.stage_runner import StageRunner
from idea_engine.pipeline.stages import StageDefinition


class HttpError(RuntimeError):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class FakeGenerationClient:
    def __init__(self, outputs: list[Any]) -> None:
        self._outputs = list(outputs)
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        *,
        prompt: str,
        system_instruction: str,
        sampling: SamplingConfig,
    ) -> GenerationResult:
        self.calls.append(
            {
                "prompt": prompt,
                "system_instruction": system_instruction,
                "sampling": sampling,
            }
        )
        output = self._outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        if isinstance(output, GenerationResult):
            return output
        return GenerationResult(
            text=output,
            provider="google",
            model="gemini-2.5-pro",
            usage_normalized={"prompt_tokens": 100, "completion_tokens": 50},
            cost={"llm_cost_usd": 0.001},
            sources=[Source(title="Report", url="https://example.com/report")],
        )


class FakeInstructions:
    def __init__(self) -> None:
        self.requested: list[str] = []

    def system_instruction(self, prompt_name: str) -> str:
        self.requested.append(prompt_name)
        return f"You are the {prompt_name} agent."


def _prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    return f"inputs={sorted(inputs)} guidance={guidance}"


def _trend_stage(**kwargs: Any) -> StageDefinition:
    params: dict[str, Any] = {
        "name": "trend_research",
        "step": steps.TREND_RESEARCH,
        "requires": ("user_directive", "research_direction"),
        "produces": "trends",
        "prompt_name": "trend_research",
        "build_prompt": _prompt,
        "sampling": SamplingConfig(mode="research"),
        "required_fields": ("title", "description"),
    }
    params.update(kwargs)
    return StageDefinition(**params)


def _runner(client: FakeGenerationClient, **kwargs: Any) -> tuple[StageRunner, list[float]]:
    sleeps: list[float] = []
    runner = StageRunner(
        client=client,
        extractor=StructuredOutputExtractor(),
        instructions=FakeInstructions(),
        sleep_fn=sleeps.append,
        **kwargs,
    )
    return runner, sleeps


def test_ok_outcome_carries_value_sources_and_usage() -> None:
    client = FakeGenerationClient(['{"title": "Plant-based lunches", "description": "Growing"}'])
    runner, _ = _runner(client)
    context = PipelineContext(user_directive="vegan meal planning")

    outcome = runner.execute(_trend_stage(), context)

    assert outcome.status == "ok"
    assert outcome.usable is True
    assert outcome.value == {"title": "Plant-based lunches", "description": "Growing"}
    assert outcome.strategy == "direct"
    assert outcome.sources == (Source(title="Report", url="https://example.com/report"),)
    assert outcome.usage_normalized == {"prompt_tokens": 100, "completion_tokens": 50}
    assert outcome.attempts == 1
    assert client.calls[0]["prompt"] == "inputs=['user_directive'] guidance=None"
    assert client.calls[0]["system_instruction"] == "You are the trend_research agent."


def test_stage_overrides_are_applied_to_sampling() -> None:
    client = FakeGenerationClient(['{"title": "t", "description": "d"}'])
    runner, _ = _runner(
        client,
        stage_overrides={"trend_research": {"max_output_tokens": 4000, "unknown": 1}},
    )

    runner.execute(_trend_stage(), PipelineContext())

    sampling = client.calls[0]["sampling"]
    assert sampling.mode == "research"
    assert sampling.max_output_tokens == 4000


def test_transient_error_is_retried_once() -> None:
    client = FakeGenerationClient(
        [HttpError("unavailable", 503), '{"title": "t", "description": "d"}']
    )
    runner, sleeps = _runner(client, max_retries=1, retry_base_delay_seconds=2.0)

    outcome = runner.execute(_trend_stage(), PipelineContext())

    assert outcome.status == "ok"
    assert outcome.attempts == 2
    assert sleeps == [2.0]


def test_non_retryable_error_without_fallback_fails() -> None:
    client = FakeGenerationClient([HttpError("bad request", 400)])
    runner, sleeps = _runner(client)

    outcome = runner.execute(_trend_stage(), PipelineContext())

    assert outcome.status == "failed"
    assert outcome.usable is False
    assert outcome.error_code == "GENERATION_API_ERROR"
    assert outcome.reason == "HttpError: bad request"
    assert sleeps == []


def test_client_error_uses_stage_fallback() -> None:
    client = FakeGenerationClient([HttpError("down", 500), HttpError("down", 500)])
    runner, _ = _runner(client)
    stage = _trend_stage(fallback=lambda inputs: {"title": "Fallback", "description": "d"})

    outcome = runner.execute(stage, PipelineContext())

    assert outcome.status == "fallback"
    assert outcome.usable is True
    assert outcome.value == {"title": "Fallback", "description": "d"}
    assert outcome.strategy == "fallback"
    assert outcome.attempts == 2


def test_no_response_and_empty_response_are_distinguished() -> None:
    client = FakeGenerationClient(
        [
            GenerationResult(text=None, provider="google", model="m"),
            GenerationResult(text="   ", provider="google", model="m"),
        ]
    )
    runner, _ = _runner(client)

    first = runner.execute(_trend_stage(), PipelineContext())
    second = runner.execute(_trend_stage(), PipelineContext())

    assert (first.status, first.error_code, first.reason) == (
        "failed",
        "GENERATION_EMPTY",
        "no response",
    )
    assert (second.status, second.error_code, second.reason) == (
        "failed",
        "GENERATION_EMPTY",
        "empty response",
    )


def test_missing_required_field_reports_missing_fields_code() -> None:
    client = FakeGenerationClient(['{"title": "only title"}'])
    runner, _ = _runner(client)

    outcome = runner.execute(_trend_stage(), PipelineContext())

    assert outcome.status == "failed"
    assert outcome.error_code == "OUTPUT_MISSING_FIELDS"
    assert outcome.parse is not None
    assert outcome.raw_text == '{"title": "only title"}'


def test_parse_failure_with_fallback_is_degraded() -> None:
    client = FakeGenerationClient(["I am not JSON"])
    runner, _ = _runner(client)
    stage = _trend_stage(fallback=lambda inputs: {"title": "F", "description": "D"})

    outcome = runner.execute(stage, PipelineContext())

    assert outcome.status == "fallback"
    assert outcome.error_code == "OUTPUT_INVALID_JSON"
    assert outcome.parse is not None and outcome.parse.used_fallback is True


def test_text_stage_returns_stripped_text_and_extra_inputs() -> None:
    client = FakeGenerationClient(["  Focus on night-shift workers.  "])
    runner, _ = _runner(client)
    stage = StageDefinition(
        name="critique",
        step=steps.CRITICAL_REVIEW,
        requires=("trends",),
        produces=None,
        prompt_name="critique",
        build_prompt=_prompt,
        sampling=SamplingConfig(),
        output_format="text",
        load_bearing=False,
        extra_inputs=("draft_idea",),
    )
    context = PipelineContext()
    context.set("trends", {"title": "t"})

    outcome = runner.execute(stage, context, extra_inputs={"draft_idea": {"title": "x"}})

    assert outcome.status == "ok"
    assert outcome.value == "Focus on night-shift workers."
    assert client.calls[0]["prompt"] == "inputs=['draft_idea', 'trends'] guidance=None"


def test_incomplete_fallback_after_client_error_fails() -> None:
    client = FakeGenerationClient([HttpError("bad request", 400)])
    runner, _ = _runner(client)
    stage = _trend_stage(fallback=lambda inputs: {"title": "Fallback"})

    outcome = runner.execute(stage, PipelineContext())

    assert outcome.status == "failed"
    assert outcome.value is None
    assert outcome.strategy is None
    assert outcome.reason == (
        "HttpError: bad request; fallback missing required fields: description"
    )


def test_incomplete_fallback_after_parse_failure_fails() -> None:
    client = FakeGenerationClient(["I am not JSON"])
    runner, _ = _runner(client)
    stage = _trend_stage(fallback=lambda inputs: {"description": "D"})

    outcome = runner.execute(stage, PipelineContext())

    assert outcome.status == "failed"
    assert outcome.usable is False
    assert outcome.parse is not None and outcome.parse.used_fallback is False
    assert outcome.reason is not None
    assert outcome.reason.endswith("fallback missing required fields: title")
