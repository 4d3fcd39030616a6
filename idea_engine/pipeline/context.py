from __future__ import annotations

import copy
from typing import Any, Iterable

from idea_engine.utils.error_taxonomy import ContextSlotError

SEED_SLOTS: tuple[str, ...] = ("user_directive", "previous_ideas")
STAGE_SLOTS: tuple[str, ...] = (
    "research_direction",
    "trends",
    "problem_gaps",
    "competitive",
    "monetization",
    "what_to_build",
)
CONTEXT_SLOTS: tuple[str, ...] = SEED_SLOTS + STAGE_SLOTS


class PipelineContext:
    """Set-once accumulator for one pipeline run.

    A slot is either unset, set to a value, or recorded as absent (an advisory
    stage that produced nothing). Once written, a slot is never changed.
    """

    def __init__(
        self,
        *,
        user_directive: str | None = None,
        previous_ideas: Iterable[str] = (),
    ) -> None:
        self._values: dict[str, Any] = {}
        self._absent: set[str] = set()
        directive = (user_directive or "").strip()
        if directive:
            self._values["user_directive"] = directive
        ideas = [title for title in previous_ideas if title]
        if ideas:
            self._values["previous_ideas"] = ideas

    def set(self, slot: str, value: Any) -> None:
        self._check_writable(slot)
        if value is None:
            raise ValueError(f"Use mark_absent to record a missing value for {slot}")
        self._values[slot] = copy.deepcopy(value)

    def mark_absent(self, slot: str) -> None:
        self._check_writable(slot)
        self._absent.add(slot)

    def get(self, slot: str, default: Any = None) -> Any:
        if slot not in CONTEXT_SLOTS:
            raise KeyError(f"Unknown context slot: {slot}")
        return self._values.get(slot, default)

    def has(self, slot: str) -> bool:
        return slot in self._values

    def is_absent(self, slot: str) -> bool:
        return slot in self._absent

    def select(self, slots: Iterable[str]) -> dict[str, Any]:
        """Copy of the requested slots that hold a value; unset slots are left out."""
        selected: dict[str, Any] = {}
        for slot in slots:
            if slot not in CONTEXT_SLOTS:
                raise KeyError(f"Unknown context slot: {slot}")
            if slot in self._values:
                selected[slot] = copy.deepcopy(self._values[slot])
        return selected

    def snapshot(self) -> dict[str, Any]:
        return {
            "values": copy.deepcopy(self._values),
            "absent": sorted(self._absent),
        }

    def _check_writable(self, slot: str) -> None:
        if slot not in CONTEXT_SLOTS:
            raise KeyError(f"Unknown context slot: {slot}")
        if slot in self._values or slot in self._absent:
            raise ContextSlotError(f"Context slot already written: {slot}")
