from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Literal, Protocol, Sequence

from idea_engine.extraction.cleanup import (
    clean_json_response,
    extract_json_span,
    find_missing_fields,
    fix_common_json_issues,
    looks_like_json,
    parse_json_object,
)
from idea_engine.extraction.repair import RepairResult, SchemaHint
from idea_engine.logging import get_logger

logger = get_logger("extraction")

Strategy = Literal[
    "direct",
    "cleanup",
    "mixed_content",
    "heuristic",
    "escalated",
    "fallback",
]

FALLBACK_ERROR_PREFIX = "Used fallback data due to parsing failure"
FAILURE_ERROR_PREFIX = "All JSON parsing strategies failed"


class Repairer(Protocol):
    def repair(
        self,
        malformed_text: str,
        context: str | None = None,
        schema_hint: SchemaHint | None = None,
    ) -> RepairResult: ...


@dataclass(frozen=True, slots=True)
class ParseAttempt:
    strategy: Strategy
    success: bool
    candidate_text: str | None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ParseResult:
    success: bool
    raw_text: str
    value: dict[str, Any] | None = None
    cleaned_text: str | None = None
    error: str | None = None
    strategy: Strategy | None = None
    used_fallback: bool = False
    diagnostics: tuple[ParseAttempt, ...] = ()

    @property
    def genuine(self) -> bool:
        return self.success and not self.used_fallback

    def summary(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy,
            "used_fallback": self.used_fallback,
            "error": self.error,
            "attempts": [
                {
                    "strategy": attempt.strategy,
                    "success": attempt.success,
                    "error": attempt.error,
                }
                for attempt in self.diagnostics
            ],
        }


class StructuredOutputExtractor:
    """Turns raw model text into a JSON object holding every required field.

    Strategies run in a fixed order and the first one yielding a complete
    object wins: direct parse, cleanup, mixed content span, heuristic repair,
    escalated repair, then the caller's fallback. Only escalated repair makes
    a network call, and only when a repairer is configured.
    A fallback that lacks a required field is rejected like any other
    candidate, so a successful result always holds every required field.
    """

    def __init__(self, *, repairer: Repairer | None = None) -> None:
        self._repairer = repairer

    def extract(
        self,
        raw_text: str | None,
        required_fields: Sequence[str] = (),
        fallback: dict[str, Any] | None = None,
        *,
        schema_hint: SchemaHint | None = None,
        context_label: str | None = None,
    ) -> ParseResult:
        text = raw_text or ""
        attempts: list[ParseAttempt] = []
        tried: set[str] = set()

        def attempt(strategy: Strategy, candidate: str) -> dict[str, Any] | None:
            tried.add(candidate)
            value, error = parse_json_object(candidate)
            if value is not None:
                missing = find_missing_fields(value, required_fields)
                if missing:
                    value = None
                    error = f"missing required fields: {', '.join(missing)}"
            attempts.append(
                ParseAttempt(
                    strategy=strategy,
                    success=value is not None,
                    candidate_text=candidate,
                    error=error,
                )
            )
            return value

        def succeed(strategy: Strategy, value: dict[str, Any], candidate: str) -> ParseResult:
            if strategy != "direct":
                logger.info(
                    "Extracted %s via %s", context_label or "output", strategy,
                    extra={"strategy": strategy},
                )
            return ParseResult(
                success=True,
                raw_text=text,
                value=value,
                cleaned_text=None if candidate == text else candidate,
                strategy=strategy,
                diagnostics=tuple(attempts),
            )

        value = attempt("direct", text)
        if value is not None:
            return succeed("direct", value, text)

        best = text
        cleaned = clean_json_response(text)
        if cleaned and cleaned not in tried:
            best = cleaned
            value = attempt("cleanup", cleaned)
            if value is not None:
                return succeed("cleanup", value, cleaned)

        span, span_error = extract_json_span(text)
        if span is None:
            attempts.append(
                ParseAttempt(
                    strategy="mixed_content",
                    success=False,
                    candidate_text=None,
                    error=span_error,
                )
            )
        elif span not in tried:
            best = span
            value = attempt("mixed_content", span)
            if value is not None:
                return succeed("mixed_content", value, span)
        else:
            best = span

        # Local repair cannot add fields to an object that already parses.
        if not looks_like_json(best):
            fixed = fix_common_json_issues(best)
            if fixed and fixed not in tried:
                value = attempt("heuristic", fixed)
                if value is not None:
                    return succeed("heuristic", value, fixed)

        if self._repairer is not None and text.strip():
            repair = self._repairer.repair(
                best, context=context_label, schema_hint=schema_hint
            )
            repair_error = repair.error
            repaired_value = repair.value if repair.success else None
            if repaired_value is not None:
                missing = find_missing_fields(repaired_value, required_fields)
                if missing:
                    repaired_value = None
                    repair_error = f"missing required fields: {', '.join(missing)}"
            attempts.append(
                ParseAttempt(
                    strategy="escalated",
                    success=repaired_value is not None,
                    candidate_text=repair.repaired_text,
                    error=repair_error,
                )
            )
            if repaired_value is not None:
                return succeed("escalated", repaired_value, repair.repaired_text or best)

        last_error = attempts[-1].error if attempts else "empty input"

        if fallback is not None:
            missing = find_missing_fields(fallback, required_fields)
            if not missing:
                logger.warning(
                    "Using fallback for %s: %s", context_label or "output", last_error,
                    extra={"strategy": "fallback"},
                )
                return ParseResult(
                    success=True,
                    raw_text=text,
                    value=copy.deepcopy(fallback),
                    cleaned_text=None if best == text else best,
                    error=f"{FALLBACK_ERROR_PREFIX}: {last_error}",
                    strategy="fallback",
                    used_fallback=True,
                    diagnostics=tuple(attempts),
                )
            last_error = f"fallback missing required fields: {', '.join(missing)}"
            attempts.append(
                ParseAttempt(
                    strategy="fallback",
                    success=False,
                    candidate_text=None,
                    error=last_error,
                )
            )

        logger.error(
            "Extraction failed for %s: %s", context_label or "output", last_error
        )
        return ParseResult(
            success=False,
            raw_text=text,
            cleaned_text=None if best == text else best,
            error=f"{FAILURE_ERROR_PREFIX}: {last_error}",
            diagnostics=tuple(attempts),
        )
