from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from idea_engine.llm_client.base import Source

Trigger = Literal["scheduled", "on_demand", "manual"]


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    trigger: Trigger = "manual"
    user_directive: str | None = None
    user_id: str | None = None
    previous_ideas: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class GeneratedArtifact:
    """Final idea plus the research it was built from.

    ``what_to_build`` is None when the advisory build stage produced nothing.
    ``degraded_stages`` names stages whose value came from a fallback.
    """

    idea: dict[str, Any]
    trends: dict[str, Any]
    problem_gaps: dict[str, Any]
    competitive: dict[str, Any]
    monetization: dict[str, Any]
    what_to_build: dict[str, Any] | None = None
    research_direction: dict[str, Any] | None = None
    critique: str | None = None
    sources: tuple[Source, ...] = ()
    degraded_stages: tuple[str, ...] = ()
    review_warnings: tuple[str, ...] = ()
    job_id: str | None = None
    trigger: Trigger = "manual"
    user_id: str | None = None
    user_directive: str | None = None
    usage_normalized: dict[str, int | None] = field(default_factory=dict)
    cost_usd: float = 0.0

    @property
    def title(self) -> str:
        return str(self.idea.get("title") or "")

    @property
    def description(self) -> str:
        return str(self.idea.get("description") or "")

    @property
    def scoring(self) -> dict[str, Any]:
        scoring = self.idea.get("scoring")
        return scoring if isinstance(scoring, dict) else {}

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_stages)

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = dict(self.idea)
        document["trends"] = self.trends
        document["problemGaps"] = self.problem_gaps
        document["competitive"] = self.competitive
        document["monetization"] = self.monetization
        if self.what_to_build is not None:
            document["whatToBuild"] = self.what_to_build
        if self.research_direction is not None:
            document["researchDirection"] = self.research_direction
        if self.sources:
            document["sources"] = [
                {"title": source.title, "url": source.url} for source in self.sources
            ]
        return document
