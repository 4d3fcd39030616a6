from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from idea_engine.pipeline.artifact import GeneratedArtifact
from idea_engine.storage.db import connection, init_db
from idea_engine.storage.models import IdeaRecord

_SCORE_COLUMNS: tuple[tuple[str, str], ...] = (
    ("total_score", "totalScore"),
    ("problem_severity", "problemSeverity"),
    ("founder_market_fit", "founderMarketFit"),
    ("technical_feasibility", "technicalFeasibility"),
    ("monetization_potential", "monetizationPotential"),
    ("urgency_score", "urgencyScore"),
    ("market_timing_score", "marketTimingScore"),
    ("execution_difficulty", "executionDifficulty"),
    ("moat_strength", "moatStrength"),
    ("regulatory_risk", "regulatoryRisk"),
)


class ArtifactStore(Protocol):
    def save(self, artifact: GeneratedArtifact) -> str: ...

    def recent_titles(self, *, since_hours: int = 24, limit: int = 50) -> list[str]: ...


class SQLiteArtifactStore:
    """Persists a finished idea and its sub-records in a single transaction.

    Sub-records (trend summary, scores, monetization plan) are inserted first so
    the idea row can reference them. The build recommendation and the idea point
    at each other, so the idea is inserted without it, the recommendation is
    inserted with the idea id, and the idea is then linked.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def save(self, artifact: GeneratedArtifact) -> str:
        idea_id = str(uuid4())
        created_at = _utc_now()

        with connection(self.db_path) as conn:
            why_now_id = self._insert_why_now(conn, artifact, created_at)
            score_id = self._insert_scores(conn, artifact, created_at)
            monetization_id = self._insert_monetization(conn, artifact, created_at)
            self._insert_idea(
                conn,
                artifact,
                idea_id=idea_id,
                why_now_id=why_now_id,
                score_id=score_id,
                monetization_id=monetization_id,
                created_at=created_at,
            )
            if artifact.what_to_build is not None:
                what_to_build_id = self._insert_what_to_build(
                    conn, artifact.what_to_build, idea_id=idea_id, created_at=created_at
                )
                conn.execute(
                    "UPDATE ideas SET what_to_build_id = ? WHERE id = ?",
                    (what_to_build_id, idea_id),
                )

        return idea_id

    def get_idea(self, idea_id: str) -> IdeaRecord:
        with connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM ideas WHERE id = ?", (idea_id,)).fetchone()

        if row is None:
            raise KeyError(f"Idea not found: {idea_id}")
        return _row_to_idea_record(row)

    def get_what_to_build(self, idea_id: str) -> dict[str, Any] | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM what_to_build WHERE idea_id = ?", (idea_id,)
            ).fetchone()

        if row is None:
            return None
        return {
            "id": str(row["id"]),
            "platformDescription": str(row["platform_description"]),
            "coreFeaturesSummary": _from_json_list(row["core_features_json"]),
            "userInterfaces": _from_json_list(row["user_interfaces_json"]),
            "keyIntegrations": _from_json_list(row["key_integrations_json"]),
            "pricingStrategyBuildRecommendation": row["pricing_recommendation"],
        }

    def get_scores(self, score_id: str) -> dict[str, float]:
        columns = ", ".join(column for column, _ in _SCORE_COLUMNS)
        with connection(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {columns} FROM idea_scores WHERE id = ?", (score_id,)
            ).fetchone()

        if row is None:
            raise KeyError(f"Score record not found: {score_id}")
        return {key: float(row[column]) for column, key in _SCORE_COLUMNS}

    def list_ideas(self, *, limit: int = 50, job_id: str | None = None) -> list[IdeaRecord]:
        query = "SELECT * FROM ideas"
        params: list[object] = []
        if job_id is not None and job_id.strip():
            query += " WHERE job_id = ?"
            params.append(job_id.strip())
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(limit, 1))

        with connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        return [_row_to_idea_record(row) for row in rows]

    def recent_titles(self, *, since_hours: int = 24, limit: int = 50) -> list[str]:
        cutoff = (datetime.now(tz=timezone.utc) - timedelta(hours=since_hours)).isoformat()
        with connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT title FROM ideas
                WHERE created_at >= ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (cutoff, max(limit, 1)),
            ).fetchall()
        return [str(row["title"]) for row in rows]

    def _insert_why_now(
        self, conn: sqlite3.Connection, artifact: GeneratedArtifact, created_at: str
    ) -> str:
        trends = artifact.trends
        record_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO why_now (
                id, title, description, trend_strength, catalyst_type,
                timing_urgency, supporting_data_json, sources_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                str(trends.get("title") or ""),
                str(trends.get("description") or ""),
                _to_optional_float(trends.get("trendStrength")),
                _to_optional_str(trends.get("catalystType")),
                _to_optional_float(trends.get("timingUrgency")),
                _to_json_text(_as_list(trends.get("supportingData"))),
                _to_json_text(
                    [{"title": s.title, "url": s.url} for s in artifact.sources]
                ),
                created_at,
            ),
        )
        return record_id

    def _insert_scores(
        self, conn: sqlite3.Connection, artifact: GeneratedArtifact, created_at: str
    ) -> str:
        scoring = artifact.scoring
        record_id = str(uuid4())
        columns = ", ".join(column for column, _ in _SCORE_COLUMNS)
        placeholders = ", ".join("?" for _ in _SCORE_COLUMNS)
        conn.execute(
            f"""
            INSERT INTO idea_scores (id, {columns}, created_at)
            VALUES (?, {placeholders}, ?)
            """,
            (
                record_id,
                *(float(scoring[key]) for _, key in _SCORE_COLUMNS),
                created_at,
            ),
        )
        return record_id

    def _insert_monetization(
        self, conn: sqlite3.Connection, artifact: GeneratedArtifact, created_at: str
    ) -> str:
        plan = artifact.monetization
        record_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO monetization_strategies (
                id, primary_model, pricing_strategy, business_score, confidence,
                revenue_reasoning, key_metrics_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                str(plan.get("primaryModel") or ""),
                str(plan.get("pricingStrategy") or ""),
                _to_optional_float(plan.get("businessScore")),
                _to_optional_float(plan.get("confidence")),
                _to_optional_str(plan.get("revenueReasoning")),
                _to_json_text(plan.get("keyMetrics") or {}),
                created_at,
            ),
        )

        for stream in _as_list(plan.get("revenueStreams")):
            if not isinstance(stream, dict):
                continue
            conn.execute(
                """
                INSERT INTO revenue_streams (monetization_id, name, description, percentage)
                VALUES (?, ?, ?, ?)
                """,
                (
                    record_id,
                    str(stream.get("name") or "Unnamed stream"),
                    _to_optional_str(stream.get("description")),
                    _to_optional_float(stream.get("percentage")),
                ),
            )

        for projection in _as_list(plan.get("financialProjections")):
            if not isinstance(projection, dict) or projection.get("year") is None:
                continue
            conn.execute(
                """
                INSERT INTO financial_projections (
                    monetization_id, year, revenue, costs, net_margin, revenue_growth
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    int(projection["year"]),
                    _to_optional_float(projection.get("revenue")),
                    _to_optional_float(projection.get("costs")),
                    _to_optional_float(projection.get("netMargin")),
                    _to_optional_float(projection.get("revenueGrowth")),
                ),
            )
        return record_id

    def _insert_idea(
        self,
        conn: sqlite3.Connection,
        artifact: GeneratedArtifact,
        *,
        idea_id: str,
        why_now_id: str,
        score_id: str,
        monetization_id: str,
        created_at: str,
    ) -> None:
        idea = artifact.idea
        conn.execute(
            """
            INSERT INTO ideas (
                id, job_id, trigger, user_id, directive, title, description,
                problem_statement, executive_summary, narrative_hook,
                confidence_score, tags_json, why_now_id, idea_score_id,
                monetization_id, what_to_build_id, degraded_stages_json,
                review_warnings_json, full_idea_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
            """,
            (
                idea_id,
                artifact.job_id,
                artifact.trigger,
                artifact.user_id,
                artifact.user_directive,
                artifact.title,
                artifact.description,
                _to_optional_str(idea.get("problemStatement")),
                _to_optional_str(idea.get("executiveSummary")),
                _to_optional_str(idea.get("narrativeHook")),
                _to_optional_float(idea.get("confidenceScore")),
                _to_json_text(_as_list(idea.get("tags"))),
                why_now_id,
                score_id,
                monetization_id,
                _to_json_text(list(artifact.degraded_stages)),
                _to_json_text(list(artifact.review_warnings)),
                _to_json_text(artifact.to_document()),
                created_at,
            ),
        )

    def _insert_what_to_build(
        self,
        conn: sqlite3.Connection,
        recommendation: dict[str, Any],
        *,
        idea_id: str,
        created_at: str,
    ) -> str:
        record_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO what_to_build (
                id, idea_id, platform_description, core_features_json,
                user_interfaces_json, key_integrations_json,
                pricing_recommendation, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                idea_id,
                str(recommendation.get("platformDescription") or ""),
                _to_json_text(_as_list(recommendation.get("coreFeaturesSummary"))),
                _to_json_text(_as_list(recommendation.get("userInterfaces"))),
                _to_json_text(_as_list(recommendation.get("keyIntegrations"))),
                _to_optional_str(recommendation.get("pricingStrategyBuildRecommendation")),
                created_at,
            ),
        )
        return record_id


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _row_to_idea_record(row: Any) -> IdeaRecord:
    full_idea = _from_json_text(row["full_idea_json"])
    return IdeaRecord(
        idea_id=str(row["id"]),
        title=str(row["title"]),
        description=str(row["description"]),
        trigger=str(row["trigger"]),
        created_at=str(row["created_at"]),
        why_now_id=str(row["why_now_id"]),
        idea_score_id=str(row["idea_score_id"]),
        monetization_id=str(row["monetization_id"]),
        what_to_build_id=_to_optional_str(row["what_to_build_id"]),
        job_id=_to_optional_str(row["job_id"]),
        user_id=_to_optional_str(row["user_id"]),
        directive=_to_optional_str(row["directive"]),
        degraded_stages=tuple(str(v) for v in _from_json_list(row["degraded_stages_json"])),
        review_warnings=tuple(str(v) for v in _from_json_list(row["review_warnings_json"])),
        full_idea=full_idea,
    )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def _to_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    text = str(value)
    return text if text else None


def _to_optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _to_json_text(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _from_json_text(value: object) -> dict[str, Any] | None:
    text = _to_optional_str(value)
    if text is None:
        return None

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"_raw": text}

    if not isinstance(parsed, dict):
        return {"_value": parsed}
    return parsed


def _from_json_list(value: object) -> list[Any]:
    if value is None:
        return []
    try:
        parsed = json.loads(str(value))
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []
