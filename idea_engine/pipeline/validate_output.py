from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator

from idea_engine.pipeline.stages import SCORING_FIELDS


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    schema_errors: list[str]
    invariant_errors: list[str]

    @property
    def errors(self) -> list[str]:
        return self.schema_errors + self.invariant_errors


def validate_artifact(
    *,
    idea: dict[str, Any],
    schema: dict[str, Any] | None,
) -> ValidationResult:
    schema_errors = _validate_schema(idea=idea, schema=schema) if schema else []
    invariant_errors = _validate_invariants(idea=idea)

    return ValidationResult(
        valid=not schema_errors and not invariant_errors,
        schema_errors=schema_errors,
        invariant_errors=invariant_errors,
    )


def _validate_schema(*, idea: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(idea), key=lambda item: list(item.path))

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.path)
        if path:
            messages.append(f"{path}: {error.message}")
        else:
            messages.append(error.message)

    return messages


def _validate_invariants(*, idea: dict[str, Any]) -> list[str]:
    errors: list[str] = []

    for key in ("title", "description"):
        value = idea.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{key} must be a non-empty string")

    scoring = idea.get("scoring")
    if not isinstance(scoring, dict):
        errors.append("scoring must be an object")
        return errors

    for name in SCORING_FIELDS:
        value = scoring.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"scoring.{name} must be a number")
        elif not 0 <= value <= 10:
            errors.append(f"scoring.{name} must be between 0 and 10, got {value}")

    return errors
