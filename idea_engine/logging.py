from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import local
from typing import Any, Iterable, Iterator

LOGGER_NAME = "idea_engine"

_log_ctx = local()
_CONTEXT_FIELDS = ("job_id", "trigger", "stage")
_EXTRA_FIELDS = ("duration_ms", "metrics", "error_code", "strategy")


def set_log_context(**kwargs: Any) -> None:
    for key, value in kwargs.items():
        setattr(_log_ctx, key, value)


def get_log_context() -> dict[str, Any]:
    return {k: v for k, v in _log_ctx.__dict__.items() if not k.startswith("_")}


def clear_log_context(keys: Iterable[str] | None = None) -> None:
    names = list(get_log_context()) if keys is None else list(keys)
    for name in names:
        if hasattr(_log_ctx, name):
            delattr(_log_ctx, name)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    previous = get_log_context()
    set_log_context(**kwargs)
    try:
        yield
    finally:
        clear_log_context(kwargs.keys())
        set_log_context(**{k: v for k, v in previous.items() if k in kwargs})


def get_logger(name: str | None = None) -> logging.Logger:
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "level": record.levelname,
            "logger": record.name,
        }
        for field in _CONTEXT_FIELDS:
            data[field] = getattr(record, field, ctx.get(field))
        data["msg"] = record.getMessage()

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                data[field] = getattr(record, field)

        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        data = {k: v for k, v in data.items() if v is not None}
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(
    level: int | str = logging.INFO, log_file: str | Path | None = None
) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = JsonFormatter()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
