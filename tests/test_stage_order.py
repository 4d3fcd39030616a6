from __future__ import annotations

from typing import Any, Mapping

import pytest

from idea_engine.extraction.cleanup import find_missing_fields
from idea_engine.llm_client.base import SamplingConfig
from idea_engine.pipeline import steps
from idea_engine.pipeline.stages import (
    SCORING_FIELDS,
    StageDefinition,
    build_synthesis_prompt,
    default_stages,
    monetization_fallback,
    problem_gaps_fallback,
    synthesis_fallback,
    trend_fallback,
    validate_stage_order,
)
from idea_engine.utils.error_taxonomy import PipelineDefinitionError


def _prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    del guidance
    return str(sorted(inputs))


def _stage(
    name: str,
    requires: tuple[str, ...],
    produces: str | None,
    **kwargs: Any,
) -> StageDefinition:
    return StageDefinition(
        name=name,
        step=steps.TREND_RESEARCH,
        requires=requires,
        produces=produces,
        prompt_name=name,
        build_prompt=_prompt,
        sampling=SamplingConfig(),
        **kwargs,
    )


def test_default_stage_order_is_valid() -> None:
    stages = default_stages()

    validate_stage_order(stages.all())

    assert [stage.name for stage in stages.research] == [
        "research_direction",
        "trend_research",
        "problem_analysis",
        "competitive_analysis",
        "monetization",
        "what_to_build",
    ]
    assert stages.critique.output_format == "text"
    assert stages.critique.load_bearing is False


def test_stage_requiring_later_output_is_rejected() -> None:
    stages = [
        _stage("problem_analysis", ("trends",), "problem_gaps"),
        _stage("trend_research", ("user_directive",), "trends"),
    ]

    with pytest.raises(PipelineDefinitionError, match="problem_analysis"):
        validate_stage_order(stages)


def test_duplicate_producer_and_duplicate_name_are_rejected() -> None:
    with pytest.raises(PipelineDefinitionError, match="already set"):
        validate_stage_order(
            [
                _stage("a", (), "trends"),
                _stage("b", (), "trends"),
            ]
        )
    with pytest.raises(PipelineDefinitionError, match="Duplicate stage name"):
        validate_stage_order([_stage("a", (), "trends"), _stage("a", (), None)])


def test_text_stage_cannot_declare_required_fields() -> None:
    with pytest.raises(PipelineDefinitionError, match="Text stage"):
        validate_stage_order(
            [_stage("critique", (), None, output_format="text", required_fields=("x",))]
        )


def test_synthesis_prompt_includes_guidance_verbatim() -> None:
    guidance = "Narrow the audience to night-shift nurses.\nDrop the B2B angle."
    inputs = {
        "user_directive": "vegan meal planning for office workers",
        "trends": {"title": "Plant-based lunches"},
    }

    with_guidance = build_synthesis_prompt(inputs, guidance)
    without_guidance = build_synthesis_prompt(inputs, None)

    assert guidance in with_guidance
    assert guidance not in without_guidance
    assert build_synthesis_prompt(inputs, guidance) == with_guidance


def test_computed_synthesis_fallback_satisfies_required_fields() -> None:
    value = synthesis_fallback(
        {
            "user_directive": "vegan meal planning for office workers",
            "trends": {"title": "Plant-based lunches", "description": "More people eat vegan at work"},
            "problem_gaps": {"problems": ["No quick vegan options near offices"]},
        }
    )

    assert value["title"]
    assert value["description"]
    assert value["problemStatement"]
    for name in SCORING_FIELDS:
        assert isinstance(value["scoring"][name], (int, float))


def test_monetization_fallback_has_required_fields() -> None:
    value = monetization_fallback({})

    for key in ("primaryModel", "pricingStrategy", "revenueStreams", "keyMetrics"):
        assert key in value


@pytest.mark.parametrize(
    "inputs",
    [
        {},
        {
            "user_directive": "vegan meal planning for office workers",
            "research_direction": {"industryRotation": "Food tech"},
            "trends": {"title": "Plant-based lunches"},
            "competitive": {"positioning": {"valueProposition": "Plans lunches in minutes"}},
            "monetization": {"pricingStrategy": "Freemium"},
        },
    ],
)
def test_every_json_stage_fallback_satisfies_its_required_fields(
    inputs: dict[str, Any],
) -> None:
    stages = default_stages()

    for stage in stages.research + (stages.synthesis,):
        assert stage.fallback is not None, stage.name
        value = stage.fallback(inputs)
        assert value is not None
        assert find_missing_fields(value, stage.required_fields) == [], stage.name


def test_trend_fallback_follows_directive_then_research_direction() -> None:
    from_directive = trend_fallback({"user_directive": "pet care for renters"})
    from_direction = trend_fallback(
        {"research_direction": {"industryRotation": "Pet tech", "globalMarketFocus": "Europe"}}
    )

    assert from_directive["title"] == "Growing Demand: Pet care for renters"
    assert "pet care for renters" in from_directive["description"]
    assert from_direction["title"] == "Pet tech Innovation in Europe"


def test_problem_gaps_fallback_uses_trend_when_no_directive() -> None:
    value = problem_gaps_fallback({"trends": {"title": "Plant-based lunches"}})

    assert "Plant-based lunches" in value["problems"][0]
    assert value["gaps"][0]["title"]
