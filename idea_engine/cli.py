from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from typing import Any, Sequence
from uuid import uuid4

from idea_engine.config.settings import Settings, get_settings
from idea_engine.extraction.extractor import StructuredOutputExtractor
from idea_engine.extraction.repair import RepairEscalator
from idea_engine.jobs.polling import poll_job
from idea_engine.jobs.tracker import SQLiteJobTracker
from idea_engine.llm_client.base import GenerationClient, RoutedGenerationClient
from idea_engine.llm_client.gemini_client import GeminiGenerationClient
from idea_engine.llm_client.openai_client import OpenAIGenerationClient
from idea_engine.logging import get_logger, setup_logging
from idea_engine.pipeline.orchestrator import IdeaPipelineOrchestrator
from idea_engine.pipeline.stage_runner import StageRunner
from idea_engine.pipeline.stages import default_stages
from idea_engine.pipeline.triggers import run_on_demand, run_scheduled_batch
from idea_engine.prompts.manager import PromptManager, PromptSet
from idea_engine.storage.artifacts import JobArtifactsManager
from idea_engine.storage.repo import SQLiteArtifactStore
from idea_engine.utils.error_taxonomy import PipelineFailure
from idea_engine.utils.ttl_cache import TTLCache

logger = get_logger("cli")


def build_generation_client(
    *,
    provider: str,
    model: str,
    settings: Settings,
    grounded: bool,
) -> GenerationClient:
    if provider == "openai":
        return OpenAIGenerationClient(
            api_key=settings.openai_api_key,
            pricing_config=settings.pricing_config,
            default_model=model,
        )
    if provider == "google":
        return GeminiGenerationClient(
            api_key=settings.google_api_key,
            pricing_config=settings.pricing_config,
            default_model=model,
            grounded=grounded,
        )
    raise ValueError(f"Unsupported generation provider: {provider}")


def build_orchestrator(
    settings: Settings,
) -> tuple[IdeaPipelineOrchestrator, SQLiteJobTracker]:
    fast = build_generation_client(
        provider=settings.fast_provider,
        model=settings.fast_model,
        settings=settings,
        grounded=False,
    )
    research = build_generation_client(
        provider=settings.research_provider,
        model=settings.research_model,
        settings=settings,
        grounded=True,
    )
    client = RoutedGenerationClient(fast=fast, research=research)

    prompts = PromptManager(
        settings.resolved_prompts_root,
        cache=TTLCache[PromptSet](ttl_seconds=settings.prompt_cache_ttl_seconds),
    )
    extractor = StructuredOutputExtractor(
        repairer=RepairEscalator(
            client=client,
            temperature=settings.repair_temperature,
            max_output_tokens=settings.repair_max_output_tokens,
        )
    )

    stages = default_stages()
    stage_overrides: dict[str, dict[str, Any]] = {}
    for stage in stages.all():
        timeout = (
            settings.research_timeout_seconds
            if stage.sampling.mode == "research"
            else settings.fast_timeout_seconds
        )
        stage_overrides[stage.name] = {
            "timeout_seconds": timeout,
            **settings.stage_overrides(stage.name),
        }

    runner = StageRunner(
        client=client,
        extractor=extractor,
        instructions=prompts,
        stage_overrides=stage_overrides,
        max_retries=settings.stage_max_retries,
        retry_base_delay_seconds=settings.stage_retry_base_delay_seconds,
    )
    tracker = SQLiteJobTracker(settings.resolved_sqlite_path)
    orchestrator = IdeaPipelineOrchestrator(
        runner=runner,
        tracker=tracker,
        store=SQLiteArtifactStore(settings.resolved_sqlite_path),
        stages=stages,
        artifacts_manager=JobArtifactsManager(settings.resolved_data_dir),
        artifact_schema=prompts.load_latest("idea_synthesis").schema,
    )
    return orchestrator, tracker


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idea-engine",
        description="Generate researched startup ideas and track generation jobs.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file with API keys and overrides.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scheduled = subparsers.add_parser(
        "scheduled", help="Run the daily batch (one job per idea)."
    )
    scheduled.add_argument("--count", type=int, default=None)
    scheduled.add_argument("--delay", type=float, default=None)

    on_demand = subparsers.add_parser(
        "on-demand", help="Generate ideas for a user directive under one job."
    )
    on_demand.add_argument("--directive", required=True)
    on_demand.add_argument("--user-id", default=None)
    on_demand.add_argument("--request-id", default=None)
    on_demand.add_argument("--count", type=int, default=None)
    on_demand.add_argument("--delay", type=float, default=None)

    status = subparsers.add_parser("status", help="Print a job record.")
    status.add_argument("job_id")
    status.add_argument(
        "--wait",
        action="store_true",
        help="Poll until the job reaches COMPLETED or FAILED.",
    )
    status.add_argument("--timeout", type=float, default=None)
    return parser


def _load_settings(env_file: str) -> Settings:
    if env_file == ".env":
        return get_settings()
    return Settings(_env_file=env_file)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = _load_settings(args.env_file)
    setup_logging(level=settings.log_level, log_file=settings.log_file)

    if args.command == "status":
        tracker = SQLiteJobTracker(settings.resolved_sqlite_path)
        try:
            if args.wait:
                record = poll_job(
                    tracker,
                    args.job_id,
                    interval_seconds=settings.poll_interval_seconds,
                    timeout_seconds=args.timeout,
                )
            else:
                record = tracker.read(args.job_id)
        except KeyError as error:
            print(str(error), file=sys.stderr)
            return 2
        print(json.dumps(asdict(record), ensure_ascii=False, indent=2))
        return 0

    orchestrator, tracker = build_orchestrator(settings)

    if args.command == "scheduled":
        summary = run_scheduled_batch(
            orchestrator,
            batch_size=args.count or settings.scheduled_batch_size,
            delay_seconds=(
                settings.batch_delay_seconds if args.delay is None else args.delay
            ),
            novelty_window_hours=settings.novelty_window_hours,
        )
        print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
        return 0 if summary.success_count else 1

    request_id = args.request_id or str(uuid4())
    try:
        artifact_ids = run_on_demand(
            orchestrator,
            tracker,
            request_id=request_id,
            directive=args.directive,
            user_id=args.user_id,
            batch_size=args.count or settings.on_demand_batch_size,
            delay_seconds=(
                settings.batch_delay_seconds if args.delay is None else args.delay
            ),
        )
    except PipelineFailure as failure:
        print(
            json.dumps(
                {"requestId": request_id, "error": failure.friendly_message},
                ensure_ascii=False,
            ),
            file=sys.stderr,
        )
        return 1

    print(
        json.dumps(
            {"requestId": request_id, "ideaIds": artifact_ids},
            ensure_ascii=False,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
