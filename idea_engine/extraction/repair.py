from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence

from idea_engine.extraction.cleanup import clean_json_response, parse_json_object
from idea_engine.llm_client.base import GenerationClient, SamplingConfig
from idea_engine.logging import get_logger
from idea_engine.utils.error_taxonomy import build_error_details

logger = get_logger("extraction.repair")

RepairMode = Literal["syntax", "schema"]

SYNTAX_SYSTEM_INSTRUCTION = (
    "You are a JSON repair specialist. Fix malformed JSON and return only the "
    "corrected JSON object with no explanation."
)
SCHEMA_SYSTEM_INSTRUCTION = (
    "You are a data structuring specialist. Convert the provided content into a "
    "JSON object with exactly the requested structure. Return only the JSON object."
)


@dataclass(frozen=True, slots=True)
class SchemaHint:
    expected_keys: tuple[str, ...] = ()
    description: str | None = None
    example: dict[str, Any] | None = None

    @property
    def is_structural(self) -> bool:
        return bool(self.expected_keys) or self.example is not None


@dataclass(frozen=True, slots=True)
class RepairResult:
    success: bool
    mode: RepairMode
    value: dict[str, Any] | None = None
    repaired_text: str | None = None
    error: str | None = None
    usage_normalized: dict[str, int | None] = field(default_factory=dict)


class RepairEscalator:
    """Asks the fast generation mode to rewrite text that local repairs could not fix.

    One generation call per ``repair``; a failed parse of the answer is reported
    as a failed repair and never retried here.
    """

    def __init__(
        self,
        *,
        client: GenerationClient,
        temperature: float = 0.1,
        max_output_tokens: int = 2000,
        model: str | None = None,
    ) -> None:
        self._client = client
        self._sampling = SamplingConfig(
            mode="fast",
            model=model,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    def repair(
        self,
        malformed_text: str,
        context: str | None = None,
        schema_hint: SchemaHint | None = None,
    ) -> RepairResult:
        mode: RepairMode
        if schema_hint is not None and schema_hint.is_structural:
            mode = "schema"
            prompt = build_schema_repair_prompt(malformed_text, context, schema_hint)
            system_instruction = SCHEMA_SYSTEM_INSTRUCTION
        else:
            mode = "syntax"
            prompt = build_syntax_repair_prompt(malformed_text, context)
            system_instruction = SYNTAX_SYSTEM_INSTRUCTION

        try:
            result = self._client.generate(
                prompt=prompt,
                system_instruction=system_instruction,
                sampling=self._sampling,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Repair call failed (%s mode): %s", mode, build_error_details(error)
            )
            return RepairResult(
                success=False,
                mode=mode,
                error=f"repair call failed: {error.__class__.__name__}: {error}",
            )

        if result.text is None or not result.text.strip():
            return RepairResult(
                success=False,
                mode=mode,
                repaired_text=result.text,
                error="repair call returned no content",
                usage_normalized=result.usage_normalized,
            )

        repaired_text = clean_json_response(result.text)
        value, parse_error = parse_json_object(repaired_text)
        if value is None:
            return RepairResult(
                success=False,
                mode=mode,
                repaired_text=repaired_text,
                error=f"repaired output is not valid JSON: {parse_error}",
                usage_normalized=result.usage_normalized,
            )

        return RepairResult(
            success=True,
            mode=mode,
            value=value,
            repaired_text=repaired_text,
            usage_normalized=result.usage_normalized,
        )


def build_syntax_repair_prompt(malformed_text: str, context: str | None) -> str:
    lines = [
        "The following text should be a JSON object but it has syntax errors"
        f"{f' ({context})' if context else ''}.",
        "",
        "Malformed JSON:",
        malformed_text,
        "",
        "Rules:",
        "- Fix punctuation, quoting, brackets and commas only.",
        "- Preserve all original data and structure.",
        "- Return only the corrected JSON object, no markdown and no commentary.",
    ]
    return "\n".join(lines)


def build_schema_repair_prompt(
    malformed_text: str,
    context: str | None,
    schema_hint: SchemaHint,
) -> str:
    lines = [
        "Convert the content below into a JSON object"
        f"{f' for {context}' if context else ''}.",
    ]
    if schema_hint.description:
        lines.extend(["", schema_hint.description])
    if schema_hint.expected_keys:
        lines.extend(
            [
                "",
                "Expected JSON structure should have these top-level keys: "
                + ", ".join(schema_hint.expected_keys),
            ]
        )
    if schema_hint.example is not None:
        lines.extend(
            [
                "",
                "Example of the expected shape:",
                json.dumps(schema_hint.example, ensure_ascii=False, indent=2),
            ]
        )
    lines.extend(
        [
            "",
            "Content:",
            malformed_text,
            "",
            "Rules:",
            "- Use the information in the content; do not invent unrelated facts.",
            "- Include every expected key, using an empty string, list or object when the content has nothing for it.",
            "- Return only the JSON object, no markdown and no commentary.",
        ]
    )
    return "\n".join(lines)


def schema_hint_from_fields(
    required_fields: Sequence[str],
    *,
    description: str | None = None,
    example: dict[str, Any] | None = None,
) -> SchemaHint:
    """Top-level keys of dotted required fields, in first-seen order."""
    keys: list[str] = []
    for field_name in required_fields:
        head = field_name.split(".", 1)[0]
        if head not in keys:
            keys.append(head)
    return SchemaHint(expected_keys=tuple(keys), description=description, example=example)
