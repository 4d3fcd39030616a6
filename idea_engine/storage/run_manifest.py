from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

MANIFEST_FILE_NAME = "run.json"


def init_run_manifest(
    *,
    artifacts_root_path: Path | str,
    job_id: str,
    trigger: str,
    inputs: dict[str, Any],
    stage_names: Sequence[str],
    status: str = "running",
) -> Path:
    timestamp = _utc_now()
    manifest = {
        "job_id": job_id,
        "trigger": trigger,
        "status": status,
        "inputs": inputs,
        "stages": {
            name: {"status": "pending", "updated_at": timestamp} for name in stage_names
        },
        "metrics": {
            "usage_normalized": {},
            "cost_usd": 0.0,
        },
        "degraded_stages": [],
        "validation": {"valid": None, "errors": []},
        "review_warnings": [],
        "artifact_id": None,
        "error_code": None,
        "error_message": None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }

    path = get_manifest_path(artifacts_root_path)
    _write_json(path, manifest)
    return path


def update_run_manifest(
    *,
    artifacts_root_path: Path | str,
    updates: dict[str, Any],
) -> dict[str, Any]:
    path = get_manifest_path(artifacts_root_path)
    current = read_run_manifest(artifacts_root_path=artifacts_root_path)
    merged = _deep_merge(current, updates)
    merged["updated_at"] = _utc_now()
    _write_json(path, merged)
    return merged


def read_run_manifest(*, artifacts_root_path: Path | str) -> dict[str, Any]:
    path = get_manifest_path(artifacts_root_path)
    if not path.exists():
        return {}

    parsed = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError(f"Manifest root must be an object: {path}")

    return parsed


def get_manifest_path(artifacts_root_path: Path | str) -> Path:
    return Path(artifacts_root_path) / MANIFEST_FILE_NAME


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for key, value in updates.items():
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            result[key] = _deep_merge(existing, value)
        else:
            result[key] = value
    return result


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, default=str),
        encoding="utf-8",
    )
    tmp_path.replace(path)


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
