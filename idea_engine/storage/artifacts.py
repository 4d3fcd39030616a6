from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

_LABEL_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True, slots=True)
class JobArtifacts:
    artifacts_root_path: Path
    logs_dir: Path
    run_log_path: Path


@dataclass(frozen=True, slots=True)
class StageArtifacts:
    stage_dir: Path
    request_path: Path
    response_raw_path: Path
    parse_path: Path


class JobArtifactsManager:
    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)

    def build_job_root(self, job_id: str) -> Path:
        return self.data_dir / "jobs" / job_id

    def create_job_artifacts(self, job_id: str) -> JobArtifacts:
        root_path = self.build_job_root(job_id)
        logs_dir = root_path / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        run_log_path = logs_dir / "run.log"
        run_log_path.touch(exist_ok=True)

        return JobArtifacts(
            artifacts_root_path=root_path,
            logs_dir=logs_dir,
            run_log_path=run_log_path,
        )

    def create_stage_artifacts(
        self,
        *,
        artifacts_root_path: Path | str,
        label: str,
    ) -> StageArtifacts:
        stage_dir = Path(artifacts_root_path) / "stages" / _safe_label(label)
        stage_dir.mkdir(parents=True, exist_ok=True)

        return StageArtifacts(
            stage_dir=stage_dir,
            request_path=stage_dir / "request.txt",
            response_raw_path=stage_dir / "response_raw.txt",
            parse_path=stage_dir / "parse.json",
        )


def _safe_label(label: str) -> str:
    cleaned = _LABEL_RE.sub("_", label.strip()).strip("._")
    return cleaned or "stage"
