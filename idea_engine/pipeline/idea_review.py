from __future__ import annotations

from typing import Any, Iterable, Sequence

RESEARCH_PHRASES: tuple[str, ...] = (
    "comprehensive analysis",
    "this analysis explores",
    "research identifies",
    "study reveals",
    "analysis demonstrates",
    "findings indicate",
    "research shows",
    "data suggests",
    "according to studies",
    "market analysis",
    "industry analysis",
)

GENERIC_TITLE_PHRASES: tuple[str, ...] = (
    "comprehensive analysis",
    "market analysis",
    "global market",
    "industry analysis",
    "research",
    "study",
    "examination",
    "investigation",
)

CONSUMER_PHRASES: tuple[str, ...] = (
    "people",
    "users",
    "customers",
    "individuals",
    "families",
    "consumers",
    "daily",
    "everyday",
    "frustrating",
    "time-consuming",
    "waste time",
    "save time",
    "easier",
    "simpler",
)

BUSINESS_JARGON: tuple[str, ...] = (
    "operational efficiency",
    "strategic positioning",
    "competitive advantage",
    "market penetration",
    "stakeholders",
    "ecosystem",
    "scalability",
    "optimization",
    "transformation",
    "integration platforms",
    "operational tools",
)


def review_idea(idea: dict[str, Any], problems: Sequence[str]) -> list[str]:
    """Flag ideas that read like research summaries instead of products.

    Warnings are advisory and never block persistence.
    """
    title = idea.get("title")
    description = idea.get("description")
    warnings: list[str] = []

    if _contains_any(description, RESEARCH_PHRASES):
        warnings.append(
            "Description contains generic research analysis instead of a consumer-focused idea"
        )
    if _contains_any(title, GENERIC_TITLE_PHRASES):
        warnings.append("Title is too generic and not consumer-specific")
    if problems and not _contains_any(description, CONSUMER_PHRASES):
        warnings.append(
            "Description doesn't clearly address the identified consumer problems"
        )
    if _contains_any(description, BUSINESS_JARGON):
        warnings.append(
            "Description uses business jargon instead of consumer-friendly language"
        )

    return warnings


def problem_titles(problem_gaps: dict[str, Any] | None) -> list[str]:
    if not isinstance(problem_gaps, dict):
        return []
    problems = problem_gaps.get("problems")
    if not isinstance(problems, list):
        return []

    titles: list[str] = []
    for item in problems:
        if isinstance(item, dict):
            text = item.get("title") or item.get("description")
            if text:
                titles.append(str(text))
        elif isinstance(item, str) and item.strip():
            titles.append(item.strip())
    return titles


def _contains_any(value: object, phrases: Iterable[str]) -> bool:
    if not isinstance(value, str) or not value:
        return False
    lowered = value.lower()
    return any(phrase in lowered for phrase in phrases)
