from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping, Sequence

from idea_engine.extraction.repair import SchemaHint, schema_hint_from_fields
from idea_engine.llm_client.base import SamplingConfig
from idea_engine.pipeline import steps
from idea_engine.pipeline.context import SEED_SLOTS
from idea_engine.pipeline.steps import GenerationStep
from idea_engine.utils.error_taxonomy import PipelineDefinitionError

OutputFormat = Literal["json", "text"]
PromptBuilder = Callable[[Mapping[str, Any], str | None], str]
FallbackBuilder = Callable[[Mapping[str, Any]], dict[str, Any] | None]

SCORING_FIELDS: tuple[str, ...] = (
    "totalScore",
    "problemSeverity",
    "founderMarketFit",
    "technicalFeasibility",
    "monetizationPotential",
    "urgencyScore",
    "marketTimingScore",
    "executionDifficulty",
    "moatStrength",
    "regulatoryRisk",
)


@dataclass(frozen=True, slots=True)
class StageDefinition:
    name: str
    step: GenerationStep
    requires: tuple[str, ...]
    produces: str | None
    prompt_name: str
    build_prompt: PromptBuilder
    sampling: SamplingConfig
    output_format: OutputFormat = "json"
    required_fields: tuple[str, ...] = ()
    fallback: FallbackBuilder | None = None
    load_bearing: bool = True
    schema_hint: SchemaHint | None = None
    extra_inputs: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PipelineStages:
    """Context-building stages followed by the synthesis and critique pair."""

    research: tuple[StageDefinition, ...]
    synthesis: StageDefinition
    critique: StageDefinition

    def all(self) -> tuple[StageDefinition, ...]:
        return self.research + (self.synthesis, self.critique)


def validate_stage_order(
    stages: Sequence[StageDefinition],
    *,
    seed_slots: Sequence[str] = SEED_SLOTS,
) -> None:
    """Every required slot must be a seed or produced by a strictly earlier stage."""
    available: set[str] = set(seed_slots)
    seen_names: set[str] = set()
    for index, stage in enumerate(stages):
        if stage.name in seen_names:
            raise PipelineDefinitionError(f"Duplicate stage name: {stage.name}")
        seen_names.add(stage.name)

        missing = [slot for slot in stage.requires if slot not in available]
        if missing:
            raise PipelineDefinitionError(
                f"Stage {stage.name} (position {index}) requires "
                f"{', '.join(missing)} which no earlier stage produces"
            )
        if stage.produces is not None:
            if stage.produces in available:
                raise PipelineDefinitionError(
                    f"Stage {stage.name} produces {stage.produces} which is already set"
                )
            available.add(stage.produces)
        if stage.output_format == "text" and stage.required_fields:
            raise PipelineDefinitionError(
                f"Text stage {stage.name} cannot declare required fields"
            )


def default_stages() -> PipelineStages:
    return PipelineStages(
        research=(
            StageDefinition(
                name="research_direction",
                step=steps.RESEARCH_DIRECTION,
                requires=("user_directive", "previous_ideas"),
                produces="research_direction",
                prompt_name="research_direction",
                build_prompt=build_research_direction_prompt,
                sampling=SamplingConfig(mode="fast", temperature=0.7, max_output_tokens=800),
                required_fields=("researchTheme", "industryRotation"),
                fallback=research_direction_fallback,
                load_bearing=False,
            ),
            StageDefinition(
                name="trend_research",
                step=steps.TREND_RESEARCH,
                requires=("user_directive", "previous_ideas", "research_direction"),
                produces="trends",
                prompt_name="trend_research",
                build_prompt=build_trend_prompt,
                sampling=SamplingConfig(mode="research", reasoning_effort="high"),
                required_fields=("title", "description"),
                fallback=trend_fallback,
                schema_hint=schema_hint_from_fields(
                    ("title", "description", "trendStrength", "catalystType",
                     "timingUrgency", "supportingData"),
                    description="A single emerging trend with supporting evidence.",
                ),
            ),
            StageDefinition(
                name="problem_analysis",
                step=steps.PROBLEM_ANALYSIS,
                requires=("user_directive", "trends"),
                produces="problem_gaps",
                prompt_name="problem_analysis",
                build_prompt=build_problem_prompt,
                sampling=SamplingConfig(mode="research", reasoning_effort="high"),
                required_fields=("problems", "gaps"),
                fallback=problem_gaps_fallback,
                schema_hint=SchemaHint(
                    expected_keys=("problems", "gaps"),
                    description="Customer problems and the market gaps they expose.",
                    example={
                        "problems": ["Specific daily frustration"],
                        "gaps": [
                            {
                                "title": "Gap title",
                                "description": "What is missing",
                                "impact": "Why it matters",
                                "target": "Who feels it",
                                "opportunity": "What could be built",
                            }
                        ],
                    },
                ),
            ),
            StageDefinition(
                name="competitive_analysis",
                step=steps.COMPETITIVE_ANALYSIS,
                requires=("trends", "problem_gaps"),
                produces="competitive",
                prompt_name="competitive_analysis",
                build_prompt=build_competitive_prompt,
                sampling=SamplingConfig(mode="research", reasoning_effort="medium"),
                required_fields=(
                    "competition.marketConcentrationLevel",
                    "positioning.valueProposition",
                ),
                fallback=competitive_fallback,
                schema_hint=schema_hint_from_fields(
                    ("competition", "positioning"),
                    description="Competitive landscape and the new entrant's positioning.",
                ),
            ),
            StageDefinition(
                name="monetization",
                step=steps.MONETIZATION_STRATEGY,
                requires=("trends", "problem_gaps", "competitive"),
                produces="monetization",
                prompt_name="monetization",
                build_prompt=build_monetization_prompt,
                sampling=SamplingConfig(mode="fast", temperature=0.1, max_output_tokens=1000),
                required_fields=(
                    "primaryModel",
                    "pricingStrategy",
                    "revenueStreams",
                    "keyMetrics",
                ),
                fallback=monetization_fallback,
            ),
            StageDefinition(
                name="what_to_build",
                step=steps.TECHNICAL_PLANNING,
                requires=("trends", "problem_gaps", "competitive", "monetization"),
                produces="what_to_build",
                prompt_name="what_to_build",
                build_prompt=build_what_to_build_prompt,
                sampling=SamplingConfig(mode="fast", temperature=0.1, max_output_tokens=1200),
                required_fields=("platformDescription", "coreFeaturesSummary"),
                fallback=what_to_build_fallback,
                load_bearing=False,
                schema_hint=SchemaHint(
                    expected_keys=(
                        "platformDescription",
                        "coreFeaturesSummary",
                        "userInterfaces",
                        "keyIntegrations",
                        "pricingStrategyBuildRecommendation",
                    ),
                    description="An MVP build recommendation for a small team.",
                ),
            ),
        ),
        synthesis=StageDefinition(
            name="idea_synthesis",
            step=steps.IDEA_SYNTHESIS,
            requires=(
                "user_directive",
                "research_direction",
                "trends",
                "problem_gaps",
                "competitive",
                "monetization",
                "what_to_build",
            ),
            produces=None,
            prompt_name="idea_synthesis",
            build_prompt=build_synthesis_prompt,
            sampling=SamplingConfig(mode="fast", temperature=0.1, max_output_tokens=2000),
            required_fields=("title", "description", "problemStatement")
            + tuple(f"scoring.{name}" for name in SCORING_FIELDS),
            fallback=synthesis_fallback,
            schema_hint=schema_hint_from_fields(
                (
                    "title", "description", "executiveSummary", "problemSolution",
                    "problemStatement", "narrativeHook", "targetKeywords", "tags",
                    "scoring", "executionPlan", "tractionSignals", "frameworkFit",
                ),
                description="One consumer-focused startup idea with ten numeric sub-scores under scoring.",
            ),
        ),
        critique=StageDefinition(
            name="critique",
            step=steps.CRITICAL_REVIEW,
            requires=("trends", "competitive"),
            produces=None,
            prompt_name="critique",
            build_prompt=build_critique_prompt,
            sampling=SamplingConfig(mode="fast", temperature=0.2, max_output_tokens=800),
            output_format="text",
            load_bearing=False,
            extra_inputs=("draft_idea",),
        ),
    )


# Prompt builders. Each receives only the slots its stage declares, plus any
# extra inputs, and must be deterministic for equal inputs.


def build_research_direction_prompt(
    inputs: Mapping[str, Any], guidance: str | None = None
) -> str:
    del guidance
    parts = ["Choose today's research direction for startup idea discovery."]
    directive = inputs.get("user_directive")
    if directive:
        parts.append(
            _section(
                "User directive (the direction must serve it directly)", directive
            )
        )
    else:
        parts.append("No user directive: pick a fresh global consumer theme.")
    parts.append(_avoid_section(inputs.get("previous_ideas")))
    return "\n\n".join(parts)


def build_trend_prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    del guidance
    parts = [
        "Research one powerful emerging trend that is creating buzz in online "
        "communities and an immediate opportunity for consumer software."
    ]
    direction = inputs.get("research_direction")
    if isinstance(direction, Mapping):
        parts.append(
            "\n".join(
                [
                    "Strategic research direction:",
                    f"- Focus: {direction.get('researchTheme', '')}",
                    f"- Industry vertical: {direction.get('industryRotation', '')}",
                    f"- Market focus: {direction.get('globalMarketFocus', 'Global')}",
                    f"- Approach: {direction.get('researchApproach', '')}",
                ]
            )
        )
    else:
        parts.append("Conduct broad global consumer lifestyle and technology research.")
    directive = inputs.get("user_directive")
    if directive:
        parts.append(_section("The trend must relate to this request", directive))
    parts.append(_avoid_section(inputs.get("previous_ideas")))
    return "\n\n".join(parts)


def build_problem_prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    del guidance
    parts = [
        "Identify the specific problems people face because of this trend and the "
        "gaps current products leave open.",
        _section("Trend", inputs.get("trends")),
    ]
    directive = inputs.get("user_directive")
    if directive:
        parts.append(_section("Keep the analysis relevant to", directive))
    return "\n\n".join(parts)


def build_competitive_prompt(
    inputs: Mapping[str, Any], guidance: str | None = None
) -> str:
    del guidance
    return "\n\n".join(
        [
            "Analyze the competitive landscape for the most promising gap below "
            "and propose positioning for a new entrant.",
            _section("Trend", inputs.get("trends")),
            _section("Problems and gaps", inputs.get("problem_gaps")),
        ]
    )


def build_monetization_prompt(
    inputs: Mapping[str, Any], guidance: str | None = None
) -> str:
    del guidance
    return "\n\n".join(
        [
            "Design the revenue model for this opportunity.",
            _section("Trend", _pick(inputs.get("trends"), "title", "description")),
            _section("Problems", _pick(inputs.get("problem_gaps"), "problems")),
            _section("Positioning", _pick(inputs.get("competitive"), "positioning")),
        ]
    )


def build_what_to_build_prompt(
    inputs: Mapping[str, Any], guidance: str | None = None
) -> str:
    del guidance
    return "\n\n".join(
        [
            "Recommend what to build first for this opportunity.",
            _section("Trend", _pick(inputs.get("trends"), "title", "description")),
            _section("Problems and gaps", inputs.get("problem_gaps")),
            _section("Positioning", _pick(inputs.get("competitive"), "positioning")),
            _section(
                "Business model",
                _pick(inputs.get("monetization"), "primaryModel", "pricingStrategy"),
            ),
        ]
    )


def build_synthesis_prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    parts = ["Synthesize one startup idea from the research below."]
    directive = inputs.get("user_directive")
    if directive:
        parts.append(_section("User request the idea must answer", directive))
    if "research_direction" in inputs:
        parts.append(
            _section(
                "Research direction",
                _pick(inputs["research_direction"], "researchTheme", "industryRotation"),
            )
        )
    parts.append(_section("Trend", inputs.get("trends")))
    parts.append(_section("Problems and gaps", inputs.get("problem_gaps")))
    parts.append(_section("Competitive landscape", inputs.get("competitive")))
    parts.append(_section("Monetization", inputs.get("monetization")))
    if "what_to_build" in inputs:
        parts.append(_section("Build recommendation", inputs["what_to_build"]))
    if guidance:
        parts.append(
            "Refinement guidance from the critical review (apply it):\n" + guidance
        )
    return "\n\n".join(parts)


def build_critique_prompt(inputs: Mapping[str, Any], guidance: str | None = None) -> str:
    del guidance
    draft = inputs.get("draft_idea") or {}
    competitive = inputs.get("competitive") or {}
    competition = competitive.get("competition", {}) if isinstance(competitive, Mapping) else {}
    trends = inputs.get("trends") or {}
    lines = [
        "Critique the draft idea below and write refinement guidance.",
        "",
        f"Idea: {draft.get('title', '')}",
        f"Description: {draft.get('description', '')}",
        f"Problem statement: {draft.get('problemStatement', '')}",
        f"Target keywords: {', '.join(str(k) for k in draft.get('targetKeywords') or [])}",
        f"Execution complexity: {draft.get('executionComplexity', 'n/a')}/10",
        f"Confidence score: {draft.get('confidenceScore', 'n/a')}/10",
        f"Narrative hook: {draft.get('narrativeHook', '')}",
        "",
        "Context:",
        f"- Research theme: {trends.get('title', '') if isinstance(trends, Mapping) else ''}",
        f"- Competition concentration: {competition.get('marketConcentrationLevel', 'unknown')}",
    ]
    return "\n".join(lines)


# Fallbacks. Competitive and monetization fall back to sample data; every
# other stage derives its fallback from the inputs it was given.


def research_direction_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    directive = inputs.get("user_directive")
    theme = (
        f"Everyday problems related to: {directive}"
        if directive
        else "Everyday consumer problems that simple software can solve"
    )
    return {
        "researchTheme": theme,
        "globalMarketFocus": "Global consumer market",
        "industryRotation": "Consumer software",
        "diversityMandates": ["Avoid previously covered themes"],
        "researchApproach": "Look for active community discussions and recent behaviour shifts",
    }


def trend_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    directive = inputs.get("user_directive")
    direction = _mapping(inputs.get("research_direction"))
    industry = direction.get("industryRotation")
    market = direction.get("globalMarketFocus")

    if directive:
        topic = _truncate(str(directive), 80)
        title = f"Growing Demand: {topic[:1].upper()}{topic[1:]}"
        description = (
            f"More people are looking for simple ways to handle {topic}, and the "
            "tools they use today were not built for it."
        )
    elif industry and market:
        title = f"{industry} Innovation in {market}"
        description = (
            f"Emerging trend in {market} focused on {industry} solutions that help "
            "people manage their daily lives."
        )
    else:
        title = "Personal Organization Tools for Busy Individuals"
        description = (
            "Busy people are looking for simple tools to stay organized, manage "
            "their time and coordinate daily activities."
        )

    return {
        "title": title,
        "description": description,
        "trendStrength": 7,
        "catalystType": "SOCIAL_TREND",
        "timingUrgency": 6,
        "supportingData": [
            "Live research was unavailable; this trend is a placeholder",
            "Consumer communities regularly discuss this kind of problem",
        ],
    }


def problem_gaps_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    directive = inputs.get("user_directive")
    trends = _mapping(inputs.get("trends"))
    topic = str(directive or trends.get("title") or "their daily routines")
    topic = _truncate(topic, 80)

    return {
        "problems": [
            f"People dealing with {topic} lose hours every week to manual workarounds "
            "because existing tools are too generic",
            f"Information about {topic} is scattered across apps, notes and group "
            "chats, so important details get missed",
        ],
        "gaps": [
            {
                "title": "No focused tool",
                "description": f"Nothing on the market is built specifically for {topic}",
                "impact": "Time lost and frustration every week",
                "target": f"Individuals who deal with {topic} regularly",
                "opportunity": "A simple, purpose-built app for this one workflow",
            }
        ],
    }


def what_to_build_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    trends = _mapping(inputs.get("trends"))
    positioning = _mapping(_mapping(inputs.get("competitive")).get("positioning"))
    monetization = _mapping(inputs.get("monetization"))

    focus = str(trends.get("title") or "everyday organization")
    value_proposition = str(
        positioning.get("valueProposition")
        or "A simple tool that removes a recurring daily frustration"
    )
    pricing = str(monetization.get("pricingStrategy") or "Freemium with a monthly premium tier")

    return {
        "platformDescription": (
            f"A mobile-first web app built around {_truncate(focus, 80).lower()}: "
            f"{value_proposition[:1].lower()}{value_proposition[1:]}."
        ),
        "coreFeaturesSummary": [
            "Personal dashboard with the day's key items",
            "Reminders and notifications for what matters next",
            "Progress tracking over weeks and months",
        ],
        "userInterfaces": [
            "Dashboard - main daily overview",
            "Detail view - one item with its history",
            "Settings - preferences and account management",
        ],
        "keyIntegrations": [
            "Phone calendar sync",
            "Stripe for subscription payments",
            "Push notifications",
        ],
        "pricingStrategyBuildRecommendation": (
            f"Implement {pricing[:1].lower()}{pricing[1:]} with Stripe Subscriptions."
        ),
    }


def competitive_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    del inputs
    return {
        "competition": {
            "marketConcentrationLevel": "MEDIUM",
            "marketConcentrationJustification": (
                "Several general-purpose tools exist but none focus on this problem"
            ),
            "directCompetitors": [],
            "indirectCompetitors": [
                {"name": "General productivity apps", "description": "Broad tools adapted by users"}
            ],
            "competitorFailurePoints": ["Too generic for the specific workflow"],
            "unfairAdvantage": ["Focused on a single painful use case"],
            "moat": ["Workflow data and habits built over time"],
            "competitivePositioningScore": 6.5,
        },
        "positioning": {
            "name": "Focused Helper",
            "targetSegment": "Individuals frustrated by the problem",
            "valueProposition": "A simple tool that removes a recurring daily frustration",
            "keyDifferentiators": ["Simplicity", "Purpose built"],
        },
    }


def monetization_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    del inputs
    return {
        "primaryModel": "SaaS Subscription",
        "pricingStrategy": "Freemium with a monthly premium tier",
        "businessScore": 7,
        "confidence": 6,
        "revenueReasoning": "Recurring subscriptions fit an everyday utility",
        "revenueStreams": [
            {"name": "Premium subscription", "description": "Monthly plan", "percentage": 85},
            {"name": "Annual plans", "description": "Discounted yearly billing", "percentage": 15},
        ],
        "keyMetrics": {
            "ltv": 1800,
            "ltvDescription": "Average customer lifetime value",
            "cac": 180,
            "cacDescription": "Blended customer acquisition cost",
            "ltvCacRatio": 10,
            "ltvCacRatioDescription": "Lifetime value to acquisition cost",
            "paybackPeriod": 6,
            "paybackPeriodDescription": "Months to recover acquisition cost",
            "runway": 18,
            "runwayDescription": "Months of runway at planned burn",
            "breakEvenPoint": "Month 14",
            "breakEvenPointDescription": "When revenue covers operating costs",
        },
        "financialProjections": [
            {"year": 1, "revenue": 120000, "costs": 150000, "netMargin": -25, "revenueGrowth": 0},
            {"year": 2, "revenue": 480000, "costs": 360000, "netMargin": 25, "revenueGrowth": 300},
            {"year": 3, "revenue": 1200000, "costs": 720000, "netMargin": 40, "revenueGrowth": 150},
        ],
    }


def synthesis_fallback(inputs: Mapping[str, Any]) -> dict[str, Any]:
    trends = inputs.get("trends") or {}
    problem_gaps = inputs.get("problem_gaps") or {}
    competitive = inputs.get("competitive") or {}

    trend_title = str(trends.get("title") or "Emerging Market Opportunity")
    trend_description = str(
        trends.get("description") or "A growing market trend presents new opportunities"
    )
    problems = problem_gaps.get("problems") or []
    main_problem = str(problems[0]) if problems else "People face challenges in their daily activities"
    positioning = competitive.get("positioning") or {}
    value_proposition = str(
        positioning.get("valueProposition") or "A simple tool that solves everyday problems"
    )

    return {
        "title": _fallback_title(trend_title),
        "description": (
            f"{_truncate(trend_description, 400)} This creates an opportunity for a "
            f"simple solution: {value_proposition[:1].lower()}{value_proposition[1:]}. "
            "The tool helps people save time and reduce frustration with a focused "
            "answer to this specific problem."
        ),
        "executiveSummary": f"A focused solution addressing the challenges in {trend_title.lower()}.",
        "problemSolution": f"{_truncate(main_problem, 100)} This tool provides a simple solution.",
        "problemStatement": _truncate(main_problem, 150),
        "innovationLevel": 7.5,
        "timeToMarket": 4,
        "confidenceScore": 6.0,
        "narrativeHook": "Finally, a tool that actually solves this problem",
        "targetKeywords": ["solution", "tool", "simple"],
        "urgencyLevel": 8.0,
        "executionComplexity": 6.5,
        "tags": ["Consumer", "Solution", "Tool"],
        "scoring": {
            "totalScore": 7.0,
            "problemSeverity": 8.0,
            "founderMarketFit": 7.0,
            "technicalFeasibility": 8.0,
            "monetizationPotential": 7.0,
            "urgencyScore": 8.0,
            "marketTimingScore": 7.5,
            "executionDifficulty": 6.5,
            "moatStrength": 6.0,
            "regulatoryRisk": 3.5,
        },
        "executionPlan": "Build an MVP with the core features, test with target users, iterate on feedback.",
        "tractionSignals": "Early adopters from the communities discussing the trend.",
        "frameworkFit": "Consumer-focused approach addressing a validated need.",
    }


def _fallback_title(trend_title: str) -> str:
    lowered = trend_title.lower()
    if "food" in lowered or "restaurant" in lowered or "meal" in lowered:
        return "Meal Planning Tool That Actually Works"
    if "family" in lowered:
        return "Family Coordination App That Actually Works"
    if "finance" in lowered or "money" in lowered:
        return "Personal Finance Tracker That Actually Helps"
    return "Simple Tool That Solves Daily Problems"


def _section(title: str, value: Any) -> str:
    if value is None or value == {} or value == []:
        return f"{title}: not available"
    if isinstance(value, str):
        return f"{title}:\n{value}"
    return f"{title}:\n{json.dumps(value, ensure_ascii=False, indent=2)}"


def _avoid_section(previous_ideas: Any) -> str:
    if not previous_ideas:
        return "Already covered themes: none, establish new territory."
    lines = ["Already covered themes (MUST AVOID):"]
    lines.extend(f'- "{title}"' for title in previous_ideas)
    return "\n".join(lines)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _pick(value: Any, *keys: str) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    picked = {key: value[key] for key in keys if key in value}
    return picked or None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
