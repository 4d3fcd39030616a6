from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL CHECK (status IN ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED')),
    trigger TEXT NOT NULL CHECK (trigger IN ('scheduled', 'on_demand', 'manual')),
    user_id TEXT,
    directive TEXT,
    current_step TEXT,
    progress_message TEXT,
    artifact_ids_json TEXT NOT NULL DEFAULT '[]',
    error_code TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS why_now (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    trend_strength REAL,
    catalyst_type TEXT,
    timing_urgency REAL,
    supporting_data_json TEXT NOT NULL DEFAULT '[]',
    sources_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS idea_scores (
    id TEXT PRIMARY KEY,
    total_score REAL NOT NULL,
    problem_severity REAL NOT NULL,
    founder_market_fit REAL NOT NULL,
    technical_feasibility REAL NOT NULL,
    monetization_potential REAL NOT NULL,
    urgency_score REAL NOT NULL,
    market_timing_score REAL NOT NULL,
    execution_difficulty REAL NOT NULL,
    moat_strength REAL NOT NULL,
    regulatory_risk REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS monetization_strategies (
    id TEXT PRIMARY KEY,
    primary_model TEXT NOT NULL,
    pricing_strategy TEXT NOT NULL,
    business_score REAL,
    confidence REAL,
    revenue_reasoning TEXT,
    key_metrics_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS revenue_streams (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    monetization_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    percentage REAL,
    FOREIGN KEY (monetization_id) REFERENCES monetization_strategies (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS financial_projections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    monetization_id TEXT NOT NULL,
    year INTEGER NOT NULL,
    revenue REAL,
    costs REAL,
    net_margin REAL,
    revenue_growth REAL,
    FOREIGN KEY (monetization_id) REFERENCES monetization_strategies (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS ideas (
    id TEXT PRIMARY KEY,
    job_id TEXT,
    trigger TEXT NOT NULL,
    user_id TEXT,
    directive TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    problem_statement TEXT,
    executive_summary TEXT,
    narrative_hook TEXT,
    confidence_score REAL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    why_now_id TEXT NOT NULL,
    idea_score_id TEXT NOT NULL,
    monetization_id TEXT NOT NULL,
    what_to_build_id TEXT,
    degraded_stages_json TEXT NOT NULL DEFAULT '[]',
    review_warnings_json TEXT NOT NULL DEFAULT '[]',
    full_idea_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (why_now_id) REFERENCES why_now (id),
    FOREIGN KEY (idea_score_id) REFERENCES idea_scores (id),
    FOREIGN KEY (monetization_id) REFERENCES monetization_strategies (id),
    FOREIGN KEY (what_to_build_id) REFERENCES what_to_build (id) DEFERRABLE INITIALLY DEFERRED
);

CREATE TABLE IF NOT EXISTS what_to_build (
    id TEXT PRIMARY KEY,
    idea_id TEXT NOT NULL UNIQUE,
    platform_description TEXT NOT NULL,
    core_features_json TEXT NOT NULL DEFAULT '[]',
    user_interfaces_json TEXT NOT NULL DEFAULT '[]',
    key_integrations_json TEXT NOT NULL DEFAULT '[]',
    pricing_recommendation TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (idea_id) REFERENCES ideas (id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status);
CREATE INDEX IF NOT EXISTS idx_ideas_created_at ON ideas (created_at);
CREATE INDEX IF NOT EXISTS idx_ideas_job_id ON ideas (job_id);
"""


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.executescript(SCHEMA_SQL)


@contextmanager
def connection(db_path: Path, *, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
