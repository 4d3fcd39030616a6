from __future__ import annotations

from typing import Any

from idea_engine.extraction.extractor import (
    FAILURE_ERROR_PREFIX,
    FALLBACK_ERROR_PREFIX,
    StructuredOutputExtractor,
)
from idea_engine.extraction.repair import RepairResult, SchemaHint


class SpyRepairer:
    def __init__(self, result: RepairResult | None = None) -> None:
        self.result = result or RepairResult(
            success=False, mode="syntax", error="repair disabled"
        )
        self.calls: list[dict[str, Any]] = []

    def repair(
        self,
        malformed_text: str,
        context: str | None = None,
        schema_hint: SchemaHint | None = None,
    ) -> RepairResult:
        self.calls.append(
            {
                "malformed_text": malformed_text,
                "context": context,
                "schema_hint": schema_hint,
            }
        )
        return self.result


def test_direct_parse_returns_input_unchanged_without_repair() -> None:
    repairer = SpyRepairer()
    extractor = StructuredOutputExtractor(repairer=repairer)

    result = extractor.extract('{"title": "Meal prep", "score": 7}', ("title",))

    assert result.success is True
    assert result.genuine is True
    assert result.strategy == "direct"
    assert result.value == {"title": "Meal prep", "score": 7}
    assert result.cleaned_text is None
    assert [attempt.strategy for attempt in result.diagnostics] == ["direct"]
    assert repairer.calls == []


def test_fenced_json_is_recovered_by_cleanup_without_network_call() -> None:
    repairer = SpyRepairer()
    extractor = StructuredOutputExtractor(repairer=repairer)
    raw = 'Here is the JSON:\n```json\n{"title": "Pantry tracker"}\n```\nLet me know!'

    result = extractor.extract(raw, ("title",))

    assert result.success is True
    assert result.strategy == "cleanup"
    assert result.value == {"title": "Pantry tracker"}
    assert result.cleaned_text == '{"title": "Pantry tracker"}'
    assert repairer.calls == []


def test_mixed_content_span_is_extracted() -> None:
    extractor = StructuredOutputExtractor()
    raw = 'Sure! {"problems": ["slow checkout"], "gaps": []} hope this helps'

    result = extractor.extract(raw, ("problems", "gaps"))

    assert result.success is True
    assert result.strategy == "mixed_content"
    assert result.value == {"problems": ["slow checkout"], "gaps": []}


def test_heuristic_repair_fixes_quotes_bare_keys_and_trailing_commas() -> None:
    extractor = StructuredOutputExtractor()
    raw = "{'title': 'Idea', tags: ['a', 'b'],}"

    result = extractor.extract(raw, ("title", "tags"))

    assert result.success is True
    assert result.strategy == "heuristic"
    assert result.value == {"title": "Idea", "tags": ["a", "b"]}


def test_heuristic_repair_strips_comments() -> None:
    extractor = StructuredOutputExtractor()
    raw = '{\n  "title": "Idea", // working name\n  /* score */ "score": 4\n}'

    result = extractor.extract(raw, ("title", "score"))

    assert result.success is True
    assert result.value == {"title": "Idea", "score": 4}


def test_missing_nested_required_field_fails_without_fallback() -> None:
    extractor = StructuredOutputExtractor()

    result = extractor.extract(
        '{"keyMetrics": {"ltv": 10}}',
        ("keyMetrics.ltv", "keyMetrics.cac"),
    )

    assert result.success is False
    assert result.value is None
    assert result.error is not None
    assert result.error.startswith(FAILURE_ERROR_PREFIX)
    assert "keyMetrics.cac" in result.error
    assert "keyMetrics.ltv" not in result.error
    assert result.raw_text == '{"keyMetrics": {"ltv": 10}}'


def test_missing_field_uses_fallback_copy_and_marks_it() -> None:
    extractor = StructuredOutputExtractor()
    fallback = {"keyMetrics": {"ltv": 1800, "cac": 50}}

    result = extractor.extract(
        '{"keyMetrics": {"ltv": 10}}',
        ("keyMetrics.ltv", "keyMetrics.cac"),
        fallback,
    )

    assert result.success is True
    assert result.used_fallback is True
    assert result.genuine is False
    assert result.strategy == "fallback"
    assert result.value == fallback
    assert result.value is not fallback
    assert result.error is not None
    assert result.error.startswith(FALLBACK_ERROR_PREFIX)


def test_traversal_through_non_container_counts_as_missing() -> None:
    extractor = StructuredOutputExtractor()

    result = extractor.extract('{"keyMetrics": 5}', ("keyMetrics.ltv",))

    assert result.success is False


def test_escalated_repair_is_used_for_prose() -> None:
    repaired = {"title": "AI tutors", "description": "Growing fast"}
    repairer = SpyRepairer(
        RepairResult(
            success=True,
            mode="schema",
            value=repaired,
            repaired_text='{"title": "AI tutors", "description": "Growing fast"}',
        )
    )
    hint = SchemaHint(expected_keys=("title", "description"))
    extractor = StructuredOutputExtractor(repairer=repairer)

    result = extractor.extract(
        "Trend: AI tutors are growing fast among parents.",
        ("title", "description"),
        schema_hint=hint,
        context_label="trend_research",
    )

    assert result.success is True
    assert result.strategy == "escalated"
    assert result.value == repaired
    assert len(repairer.calls) == 1
    assert repairer.calls[0]["schema_hint"] is hint
    assert repairer.calls[0]["context"] == "trend_research"
    mixed = [a for a in result.diagnostics if a.strategy == "mixed_content"]
    assert mixed and mixed[0].error == "no braces found"


def test_escalated_repair_output_is_checked_for_required_fields() -> None:
    repairer = SpyRepairer(
        RepairResult(success=True, mode="syntax", value={"title": "Only title"})
    )
    extractor = StructuredOutputExtractor(repairer=repairer)

    result = extractor.extract("{title: ", ("title", "description"))

    assert result.success is False
    assert result.diagnostics[-1].strategy == "escalated"
    assert result.diagnostics[-1].error == "missing required fields: description"


def test_failed_repair_falls_through_to_failure_with_all_diagnostics() -> None:
    repairer = SpyRepairer()
    extractor = StructuredOutputExtractor(repairer=repairer)

    result = extractor.extract("not json at all", ("title",))

    assert result.success is False
    assert len(repairer.calls) == 1
    strategies = [attempt.strategy for attempt in result.diagnostics]
    assert strategies[0] == "direct"
    assert strategies[-1] == "escalated"
    summary = result.summary()
    assert summary["success"] is False
    assert summary["attempts"][-1]["error"] == "repair disabled"


def test_empty_text_never_calls_repairer() -> None:
    repairer = SpyRepairer()
    extractor = StructuredOutputExtractor(repairer=repairer)

    result = extractor.extract("", ("title",), {"title": "fallback"})

    assert repairer.calls == []
    assert result.used_fallback is True
    assert result.value == {"title": "fallback"}


def test_top_level_array_is_not_accepted_by_direct_parse() -> None:
    extractor = StructuredOutputExtractor()

    result = extractor.extract('[{"title": "x"}]', ("title",))

    assert "expected object" in (result.diagnostics[0].error or "")
    assert result.strategy == "mixed_content"
    assert result.value == {"title": "x"}


def test_heuristic_repair_leaves_string_contents_alone() -> None:
    repairer = SpyRepairer()
    extractor = StructuredOutputExtractor(repairer=repairer)

    slashes = extractor.extract(
        '{title: "Go // Rust migration", description: "x",}', ("title",)
    )
    colon = extractor.extract(
        "{'note': 'meet at noon, time: 5pm', 'title': 'x',}", ("title",)
    )

    assert slashes.strategy == "heuristic"
    assert slashes.value == {"title": "Go // Rust migration", "description": "x"}
    assert colon.strategy == "heuristic"
    assert colon.value == {"note": "meet at noon, time: 5pm", "title": "x"}
    assert repairer.calls == []


def test_heuristic_repair_is_skipped_for_well_formed_incomplete_object() -> None:
    extractor = StructuredOutputExtractor()

    result = extractor.extract('{"title": "Only title"}', ("title", "description"))

    assert result.success is False
    assert [attempt.strategy for attempt in result.diagnostics] == ["direct"]


def test_fallback_missing_required_field_is_an_explicit_failure() -> None:
    extractor = StructuredOutputExtractor()

    result = extractor.extract(
        "not json at all",
        ("keyMetrics.cac",),
        {"keyMetrics": {"ltv": 10}},
    )

    assert result.success is False
    assert result.used_fallback is False
    assert result.value is None
    assert result.error == (
        f"{FAILURE_ERROR_PREFIX}: fallback missing required fields: keyMetrics.cac"
    )
    last = result.diagnostics[-1]
    assert (last.strategy, last.success) == ("fallback", False)
