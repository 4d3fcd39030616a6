from __future__ import annotations

import json
import socket
import sqlite3
from typing import Any, Literal

ErrorCode = Literal[
    "GENERATION_API_ERROR",
    "GENERATION_EMPTY",
    "OUTPUT_INVALID_JSON",
    "OUTPUT_MISSING_FIELDS",
    "STAGE_FAILED",
    "ARTIFACT_INVALID",
    "STORAGE_ERROR",
    "CANCELLED",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "GENERATION_API_ERROR": "The idea generator is temporarily unavailable. Please try again.",
    "GENERATION_EMPTY": "The idea generator returned no content. Please try again.",
    "OUTPUT_INVALID_JSON": "Generated research could not be read. Please try again.",
    "OUTPUT_MISSING_FIELDS": "Generated research was incomplete. Please try again.",
    "STAGE_FAILED": "Failed to generate ideas. Please try again.",
    "ARTIFACT_INVALID": "The generated idea did not pass quality checks. Please try again.",
    "STORAGE_ERROR": "Failed to save the generated idea. Please try again.",
    "CANCELLED": "Generation was cancelled.",
    "UNKNOWN_ERROR": "Failed to generate ideas. Please try again.",
}


class PipelineFailure(RuntimeError):
    """Raised when a run cannot produce an artifact."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        *,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code: ErrorCode = error_code
        self.stage = stage

    @property
    def friendly_message(self) -> str:
        return ERROR_FRIENDLY_MESSAGES.get(
            self.error_code, ERROR_FRIENDLY_MESSAGES["UNKNOWN_ERROR"]
        )


class PipelineCancelled(PipelineFailure):
    """Raised between stages once a cancel event has been set."""

    def __init__(self, message: str = "Run cancelled", *, stage: str | None = None) -> None:
        super().__init__("CANCELLED", message, stage=stage)


class PipelineDefinitionError(ValueError):
    """Raised when a stage list cannot be executed in the given order."""


class ContextSlotError(RuntimeError):
    """Raised on a second write to an already filled context slot."""


class JobStateError(RuntimeError):
    """Raised when a terminal job record is mutated."""


class GenerationEmptyError(RuntimeError):
    """Raised when a generation call returns no usable text."""


def classify_generation_error(error: Exception) -> ErrorCode:
    if isinstance(error, GenerationEmptyError):
        return "GENERATION_EMPTY"
    if isinstance(error, json.JSONDecodeError):
        return "OUTPUT_INVALID_JSON"
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    if is_retryable_generation_exception(error):
        return "GENERATION_API_ERROR"
    if extract_http_status_code(error) is not None:
        return "GENERATION_API_ERROR"
    if isinstance(error, (ConnectionError, TimeoutError, socket.timeout, RuntimeError)):
        return "GENERATION_API_ERROR"
    return "UNKNOWN_ERROR"


def classify_pipeline_error(error: Exception) -> ErrorCode:
    if isinstance(error, PipelineFailure):
        return error.error_code
    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    return "UNKNOWN_ERROR"


def is_retryable_generation_exception(error: Exception) -> bool:
    status_code = extract_http_status_code(error)
    if status_code is not None and is_retryable_status_code(status_code):
        return True

    if isinstance(error, (TimeoutError, socket.timeout)):
        return True

    class_name = error.__class__.__name__.lower()
    message = str(error).lower()
    if "timeout" in class_name or "timed out" in message:
        return True
    if "connection" in class_name:
        return True
    return False


def is_retryable_status_code(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def extract_http_status_code(error: Exception) -> int | None:
    for field_name in ("status_code", "status", "http_status", "code"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: Exception) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def is_storage_error_exception(error: Exception) -> bool:
    if isinstance(error, sqlite3.Error):
        return True
    if isinstance(error, OSError) and not isinstance(
        error, (ConnectionError, TimeoutError, socket.timeout)
    ):
        return True
    return False


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
