from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class GenerationStep:
    step: str
    message: str


INITIALIZING = GenerationStep("Initializing", "Preparing to generate your business ideas...")
STARTING_RESEARCH = GenerationStep(
    "Starting Research", "Beginning comprehensive market analysis..."
)
RESEARCH_DIRECTION = GenerationStep(
    "Research Direction", "Setting research direction based on your prompt..."
)
TREND_RESEARCH = GenerationStep(
    "Trend Research", "Analyzing market trends and opportunities..."
)
PROBLEM_ANALYSIS = GenerationStep(
    "Problem Analysis", "Uncovering critical market gaps and pain points..."
)
COMPETITIVE_ANALYSIS = GenerationStep(
    "Competitive Analysis",
    "Mapping competitive landscape and strategic positioning...",
)
MONETIZATION_STRATEGY = GenerationStep(
    "Monetization Strategy", "Architecting sustainable monetization strategies..."
)
TECHNICAL_PLANNING = GenerationStep(
    "Technical Planning", "Blueprinting technical implementation and MVP roadmap..."
)
IDEA_SYNTHESIS = GenerationStep(
    "Idea Synthesis", "Weaving insights into breakthrough business opportunities..."
)
CRITICAL_REVIEW = GenerationStep(
    "Critical Review", "Examining opportunity through expert critical lens..."
)
FINAL_REFINEMENT = GenerationStep(
    "Final Refinement", "Crafting your final breakthrough opportunity..."
)
SAVING_RESULTS = GenerationStep("Saving Results", "Saving your new business idea...")
FAILED = GenerationStep("Failed", "Failed to generate ideas. Please try again.")

_ORDINALS = {1: "first", 2: "second", 3: "third", 4: "fourth", 5: "fifth"}


def idea_progress_step(idea_number: int, total_ideas: int) -> GenerationStep:
    ordinal = _ORDINALS.get(idea_number, f"#{idea_number}")
    return GenerationStep(
        f"Generating idea {idea_number}/{total_ideas}",
        f"Working on your {ordinal} business opportunity...",
    )


def completion_step(generated_count: int) -> GenerationStep:
    noun = "idea" if generated_count == 1 else "ideas"
    return GenerationStep(
        "Complete",
        f"Discovery complete! Found {generated_count} business {noun} for you!",
    )
