from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import pytest

from idea_engine.llm_client.base import Source
from idea_engine.pipeline.artifact import GeneratedArtifact
from idea_engine.pipeline.stages import SCORING_FIELDS
from idea_engine.storage.repo import SQLiteArtifactStore


def _artifact(**overrides: Any) -> GeneratedArtifact:
    params: dict[str, Any] = {
        "idea": {
            "title": "Pantry Pal",
            "description": "Tracks what families already have at home.",
            "problemStatement": "People forget what is in the pantry.",
            "confidenceScore": 7,
            "tags": ["food"],
            "scoring": {name: float(index) for index, name in enumerate(SCORING_FIELDS)},
        },
        "trends": {
            "title": "Food waste awareness",
            "description": "Households track waste.",
            "trendStrength": 8,
            "catalystType": "CULTURAL_SHIFT",
            "supportingData": ["30% of food is wasted"],
        },
        "problem_gaps": {"problems": ["Forgotten groceries"], "gaps": []},
        "competitive": {"competition": {"marketConcentrationLevel": "LOW"}},
        "monetization": {
            "primaryModel": "Subscription",
            "pricingStrategy": "Freemium",
            "revenueStreams": [
                {"name": "Premium", "description": "Monthly plan", "percentage": 70},
                "not a stream",
            ],
            "keyMetrics": {"ltv": 100, "cac": 20},
            "financialProjections": [
                {"year": 1, "revenue": 10000, "costs": 8000},
                {"revenue": 1},
            ],
        },
        "what_to_build": {
            "platformDescription": "Mobile app",
            "coreFeaturesSummary": ["Barcode scan"],
            "userInterfaces": ["iOS"],
            "keyIntegrations": ["Grocery APIs"],
            "pricingStrategyBuildRecommendation": "$3/month",
        },
        "sources": (Source(title="Survey", url="https://example.com/survey"),),
        "degraded_stages": ("monetization",),
        "review_warnings": ("Title is too generic and not consumer-specific",),
        "job_id": "job-1",
        "trigger": "on_demand",
        "user_id": "user-1",
        "user_directive": "reduce food waste",
    }
    params.update(overrides)
    return GeneratedArtifact(**params)


def test_store_creates_required_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "ideas.sqlite3"
    SQLiteArtifactStore(db_path)

    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()

    assert {
        "jobs",
        "ideas",
        "why_now",
        "idea_scores",
        "monetization_strategies",
        "revenue_streams",
        "financial_projections",
        "what_to_build",
    }.issubset({name for (name,) in rows})


def test_save_writes_linked_records(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(tmp_path / "ideas.sqlite3")

    idea_id = store.save(_artifact())

    record = store.get_idea(idea_id)
    assert record.title == "Pantry Pal"
    assert record.trigger == "on_demand"
    assert record.job_id == "job-1"
    assert record.user_id == "user-1"
    assert record.directive == "reduce food waste"
    assert record.degraded_stages == ("monetization",)
    assert record.review_warnings == ("Title is too generic and not consumer-specific",)
    assert record.full_idea is not None
    assert record.full_idea["sources"] == [
        {"title": "Survey", "url": "https://example.com/survey"}
    ]

    scores = store.get_scores(record.idea_score_id)
    assert scores["totalScore"] == 0.0
    assert scores["regulatoryRisk"] == 9.0

    what_to_build = store.get_what_to_build(idea_id)
    assert what_to_build is not None
    assert what_to_build["id"] == record.what_to_build_id
    assert what_to_build["coreFeaturesSummary"] == ["Barcode scan"]
    assert what_to_build["pricingStrategyBuildRecommendation"] == "$3/month"

    with sqlite3.connect(tmp_path / "ideas.sqlite3") as conn:
        streams = conn.execute(
            "SELECT name, percentage FROM revenue_streams WHERE monetization_id = ?",
            (record.monetization_id,),
        ).fetchall()
        projections = conn.execute(
            "SELECT year, revenue FROM financial_projections WHERE monetization_id = ?",
            (record.monetization_id,),
        ).fetchall()
        why_now = conn.execute(
            "SELECT title, trend_strength, sources_json FROM why_now WHERE id = ?",
            (record.why_now_id,),
        ).fetchone()

    assert streams == [("Premium", 70.0)]
    assert projections == [(1, 10000.0)]
    assert why_now[0] == "Food waste awareness"
    assert why_now[1] == 8.0
    assert "https://example.com/survey" in why_now[2]


def test_save_without_build_recommendation_leaves_link_empty(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(tmp_path / "ideas.sqlite3")

    idea_id = store.save(_artifact(what_to_build=None))

    record = store.get_idea(idea_id)
    assert record.what_to_build_id is None
    assert store.get_what_to_build(idea_id) is None
    assert record.full_idea is not None
    assert "whatToBuild" not in record.full_idea


def test_failed_save_rolls_back_every_table(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(tmp_path / "ideas.sqlite3")
    broken = _artifact(idea={"title": "No scores", "description": "d", "scoring": {}})

    with pytest.raises(KeyError):
        store.save(broken)

    with sqlite3.connect(tmp_path / "ideas.sqlite3") as conn:
        assert conn.execute("SELECT COUNT(*) FROM why_now").fetchone() == (0,)
        assert conn.execute("SELECT COUNT(*) FROM ideas").fetchone() == (0,)


def test_list_ideas_and_recent_titles(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(tmp_path / "ideas.sqlite3")
    first = store.save(_artifact(job_id="job-a"))
    store.save(_artifact(job_id="job-b", idea={**_artifact().idea, "title": "Sleep Coach"}))

    assert [record.idea_id for record in store.list_ideas(job_id="job-a")] == [first]
    assert len(store.list_ideas()) == 2
    assert sorted(store.recent_titles(since_hours=1)) == ["Pantry Pal", "Sleep Coach"]


def test_missing_records_raise_key_error(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(tmp_path / "ideas.sqlite3")

    with pytest.raises(KeyError):
        store.get_idea("missing")
    with pytest.raises(KeyError):
        store.get_scores("missing")
