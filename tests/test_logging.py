from __future__ import annotations

import json
import logging
from pathlib import Path

from idea_engine.logging import (
    JsonFormatter,
    get_log_context,
    get_logger,
    log_context,
    setup_logging,
)


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="idea_engine.pipeline.stage",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_context_and_known_extras() -> None:
    formatter = JsonFormatter()

    with log_context(job_id="job-1", trigger="scheduled"):
        with log_context(stage="trend_research"):
            line = formatter.format(_record("Stage finished", duration_ms=12.5, strategy="direct"))
        assert get_log_context() == {"job_id": "job-1", "trigger": "scheduled"}

    payload = json.loads(line)
    assert payload["level"] == "WARNING"
    assert payload["job_id"] == "job-1"
    assert payload["stage"] == "trend_research"
    assert payload["msg"] == "Stage finished"
    assert payload["duration_ms"] == 12.5
    assert payload["strategy"] == "direct"
    assert get_log_context() == {}


def test_record_fields_override_context_and_none_is_dropped() -> None:
    formatter = JsonFormatter()

    with log_context(job_id="outer"):
        payload = json.loads(formatter.format(_record("x", job_id="inner", error_code=None)))

    assert payload["job_id"] == "inner"
    assert "error_code" not in payload
    assert "stage" not in payload


def test_nested_context_restores_previous_value() -> None:
    with log_context(stage="outer"):
        with log_context(stage="inner"):
            assert get_log_context()["stage"] == "inner"
        assert get_log_context()["stage"] == "outer"


def test_setup_logging_writes_json_lines_to_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "engine.log"
    setup_logging(level="INFO", log_file=log_file)

    get_logger("cli").info("Batch started", extra={"metrics": {"batch_size": 3}})
    for handler in logging.getLogger("idea_engine").handlers:
        handler.flush()

    payload = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert payload["logger"] == "idea_engine.cli"
    assert payload["metrics"] == {"batch_size": 3}

    logger = logging.getLogger("idea_engine")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
