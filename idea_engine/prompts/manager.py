from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from idea_engine.utils.ttl_cache import TTLCache

VERSION_RE = re.compile(r"^v(\d{3})$")


@dataclass(frozen=True, slots=True)
class PromptSet:
    prompt_name: str
    version: str
    system_prompt_text: str
    schema: dict[str, Any] | None
    meta: dict[str, Any]
    prompt_dir: Path


class PromptManager:
    """Versioned stage instructions stored as ``<root>/<name>/vNNN/`` directories.

    Each version holds ``system_prompt.txt`` and optionally ``schema.json`` and
    ``meta.yaml``. ``load_latest`` reads through the injected cache so repeated
    runs do not hit the filesystem for every stage.
    """

    def __init__(
        self,
        prompts_root: Path | str,
        *,
        cache: TTLCache[PromptSet] | None = None,
    ) -> None:
        self.prompts_root = Path(prompts_root)
        self._cache = cache

    def list_prompt_names(self) -> list[str]:
        if not self.prompts_root.exists():
            return []

        names: list[str] = []
        for child in self.prompts_root.iterdir():
            if not child.is_dir() or child.name.startswith("__"):
                continue
            if self.list_versions(child.name):
                names.append(child.name)
        return sorted(names)

    def list_versions(self, prompt_name: str) -> list[str]:
        prompt_dir = self.prompts_root / prompt_name
        if not prompt_dir.is_dir():
            return []

        versions = [
            child.name
            for child in prompt_dir.iterdir()
            if child.is_dir() and VERSION_RE.match(child.name)
        ]
        return sorted(versions, key=_version_to_int)

    def latest_version(self, prompt_name: str) -> str:
        versions = self.list_versions(prompt_name)
        if not versions:
            raise FileNotFoundError(
                f"No prompt versions for {prompt_name} under {self.prompts_root}"
            )
        return versions[-1]

    def next_version(self, prompt_name: str) -> str:
        versions = self.list_versions(prompt_name)
        if not versions:
            return "v001"
        return f"v{_version_to_int(versions[-1]) + 1:03d}"

    def load_latest(self, prompt_name: str) -> PromptSet:
        if self._cache is None:
            return self._load_latest_uncached(prompt_name)
        return self._cache.get_or_load(
            ("prompt", prompt_name),
            lambda: self._load_latest_uncached(prompt_name),
        )

    def system_instruction(self, prompt_name: str) -> str:
        return self.load_latest(prompt_name).system_prompt_text.strip()

    def load_prompt_set(self, *, prompt_name: str, version: str) -> PromptSet:
        prompt_dir = self._prompt_dir(prompt_name=prompt_name, version=version)
        system_prompt_path = prompt_dir / "system_prompt.txt"
        schema_path = prompt_dir / "schema.json"
        meta_path = prompt_dir / "meta.yaml"

        if not system_prompt_path.exists():
            raise FileNotFoundError(f"system prompt not found: {system_prompt_path}")

        schema: dict[str, Any] | None = None
        if schema_path.exists():
            schema = _parse_schema_text(schema_path.read_text(encoding="utf-8"))

        meta: dict[str, Any] = {}
        if meta_path.exists():
            parsed_meta = yaml.safe_load(meta_path.read_text(encoding="utf-8")) or {}
            if isinstance(parsed_meta, dict):
                meta = parsed_meta

        return PromptSet(
            prompt_name=prompt_name,
            version=version,
            system_prompt_text=system_prompt_path.read_text(encoding="utf-8"),
            schema=schema,
            meta=meta,
            prompt_dir=prompt_dir,
        )

    def save_as_new_version(
        self,
        *,
        prompt_name: str,
        system_prompt_text: str,
        author: str,
        note: str,
        schema: dict[str, Any] | None = None,
    ) -> str:
        if not system_prompt_text.strip():
            raise ValueError("system prompt text must not be empty")

        source_version = (
            self.latest_version(prompt_name) if self.list_versions(prompt_name) else None
        )
        effective_schema = schema
        if effective_schema is None and source_version is not None:
            effective_schema = self.load_prompt_set(
                prompt_name=prompt_name, version=source_version
            ).schema

        new_version = self.next_version(prompt_name)
        new_dir = self._prompt_dir(prompt_name=prompt_name, version=new_version)
        new_dir.mkdir(parents=True, exist_ok=False)

        (new_dir / "system_prompt.txt").write_text(system_prompt_text, encoding="utf-8")
        if effective_schema is not None:
            (new_dir / "schema.json").write_text(
                json.dumps(effective_schema, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )

        meta_payload = {
            "created_at": _utc_now(),
            "author": author.strip() or "unknown",
            "note": note.strip(),
            "source_version": source_version,
        }
        (new_dir / "meta.yaml").write_text(
            yaml.safe_dump(meta_payload, sort_keys=False, allow_unicode=False),
            encoding="utf-8",
        )

        if self._cache is not None:
            self._cache.invalidate(("prompt", prompt_name))
        return new_version

    def _load_latest_uncached(self, prompt_name: str) -> PromptSet:
        return self.load_prompt_set(
            prompt_name=prompt_name, version=self.latest_version(prompt_name)
        )

    def _prompt_dir(self, *, prompt_name: str, version: str) -> Path:
        if not VERSION_RE.match(version):
            raise ValueError(f"Invalid prompt version format: {version}")
        return self.prompts_root / prompt_name / version


def _parse_schema_text(schema_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(schema_text)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid schema JSON: {error}") from error

    if not isinstance(parsed, dict):
        raise ValueError("Schema JSON root must be an object")

    return parsed


def _version_to_int(version: str) -> int:
    match = VERSION_RE.match(version)
    if match is None:
        raise ValueError(f"Invalid version format: {version}")
    return int(match.group(1))


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
