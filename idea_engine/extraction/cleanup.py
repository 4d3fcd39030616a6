from __future__ import annotations

import json
import re
from typing import Any, Sequence

from json_repair import repair_json

_FENCED_BLOCK_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_LEADING_FENCE_RE = re.compile(r"^```[ \t]*(?:json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\n?[ \t]*```\s*$")
_PREAMBLE_RE = re.compile(
    r"^(?:here'?s the (?:corrected |fixed )?json|here is the (?:corrected |fixed )?json"
    r"|json response|response)\s*:\s*",
    re.IGNORECASE,
)
_LEAD_IN_RE = re.compile(r"^(?:the|here's|here is)\s+[^\n{]*?:\s*", re.IGNORECASE)


def clean_json_response(text: str) -> str:
    """Strip markdown fences, preambles and trailing commentary around an object."""
    cleaned = text.strip()

    fenced = _FENCED_BLOCK_RE.search(cleaned)
    if fenced is not None and "{" in fenced.group(1):
        cleaned = fenced.group(1).strip()
    else:
        cleaned = _LEADING_FENCE_RE.sub("", cleaned)
        cleaned = _TRAILING_FENCE_RE.sub("", cleaned).strip()

    cleaned = _PREAMBLE_RE.sub("", cleaned)
    cleaned = _LEAD_IN_RE.sub("", cleaned).strip()

    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        cleaned = cleaned[: last_brace + 1]

    return cleaned.strip()


def extract_json_span(text: str) -> tuple[str | None, str | None]:
    """Return ``(span, error)`` for the text between the first ``{`` and last ``}``."""
    first_brace = text.find("{")
    last_brace = text.rfind("}")
    if first_brace == -1 or last_brace == -1:
        return None, "no braces found"
    if last_brace < first_brace:
        return None, "closing brace precedes opening brace"

    span = text[first_brace : last_brace + 1]
    if not braces_balanced(span):
        return None, "unbalanced braces in extracted span"
    return span, None


def braces_balanced(text: str) -> bool:
    depth = 0
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def fix_common_json_issues(text: str) -> str:
    """Repair comments, trailing commas, single quotes and bare keys locally."""
    repaired = repair_json(text, ensure_ascii=False)
    if not isinstance(repaired, str):
        return text
    return repaired.strip()


def parse_json_object(text: str) -> tuple[dict[str, Any] | None, str | None]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as error:
        return None, f"JSON parse error: {error.msg} at line {error.lineno} column {error.colno}"

    if not isinstance(parsed, dict):
        return None, f"top-level value is {type(parsed).__name__}, expected object"
    return parsed, None


def looks_like_json(text: str | None) -> bool:
    """True when ``text`` is already a well-formed JSON object and nothing else."""
    if text is None:
        return False
    stripped = text.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return False
    parsed, _ = parse_json_object(stripped)
    return parsed is not None


def find_missing_fields(value: Any, required_fields: Sequence[str]) -> list[str]:
    """Return required dotted paths that cannot be walked to the end in ``value``."""
    missing: list[str] = []
    for field in required_fields:
        if not _has_path(value, field):
            missing.append(field)
    return missing


def _has_path(value: Any, path: str) -> bool:
    current = value
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return False
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return False
            current = current[index]
        else:
            return False
    return True

