"""
Tutor store: SQLite- or Postgres-backed agent sessions, student profiles,
mastery levels and agent memory.

agent_sessions:  (id, user_id, session_id, agent_id, input, output, tokens_used,
                  cost_usd, duration_ms, model_tier, created_at)
student_profiles: (user_id, display_name, preferred_dialect, learning_style,
                   grade_level, subjects, updated_at)
student_mastery: (user_id, kc_id, mastery, updated_at)
agent_memories:  (id, user_id, agent_id, key, value, timestamp, expires_at)

One connection per call; DB_PATH from env (default ./data/tutor.db).
The module itself satisfies context.MemoryStore.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from tutor_gateway.models import MemoryEntry, StudentProfile, utcnow
from tutor_gateway.storage.db import apply_schema, connection, sql

logger = logging.getLogger("tutor-gateway")

_SQLITE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS agent_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id TEXT,
        agent_id TEXT NOT NULL,
        input TEXT NOT NULL,
        output TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost_usd REAL NOT NULL DEFAULT 0,
        duration_ms REAL NOT NULL DEFAULT 0,
        model_tier TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_profiles (
        user_id TEXT PRIMARY KEY,
        display_name TEXT,
        preferred_dialect TEXT,
        learning_style TEXT,
        grade_level INTEGER,
        subjects TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_mastery (
        user_id TEXT NOT NULL,
        kc_id TEXT NOT NULL,
        mastery REAL NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, kc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_memories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        timestamp TEXT NOT NULL,
        expires_at TEXT
    )
    """,
]

_POSTGRES_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS agent_sessions (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        session_id TEXT,
        agent_id TEXT NOT NULL,
        input TEXT NOT NULL,
        output TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
        duration_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
        model_tier TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_profiles (
        user_id TEXT PRIMARY KEY,
        display_name TEXT,
        preferred_dialect TEXT,
        learning_style TEXT,
        grade_level INTEGER,
        subjects TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_mastery (
        user_id TEXT NOT NULL,
        kc_id TEXT NOT NULL,
        mastery DOUBLE PRECISION NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, kc_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_memories (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        timestamp TEXT NOT NULL,
        expires_at TEXT
    )
    """,
]


_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_agent_sessions_user ON agent_sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_agent_memories_owner ON agent_memories (user_id, agent_id)",
]


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def init_db() -> None:
    """
    Create tables and indexes.
    Call at app startup (lifespan); safe to call repeatedly.
    """
    apply_schema(_SQLITE_TABLES, _POSTGRES_TABLES, _INDEXES)


# --- agent sessions ---------------------------------------------------------


def log_agent_session(user_id: str, record: Dict[str, Any]) -> None:
    """Append one completed interaction. record: {agent_id, input, output, tokens_used,
    cost_usd, duration_ms, model_tier?, session_id?}."""
    init_db()  # Idempotent; ensures tables exist when TestClient doesn't run lifespan
    with connection() as conn:
        conn.execute(
            sql(
                "INSERT INTO agent_sessions (user_id, session_id, agent_id, input, output, tokens_used, "
                "cost_usd, duration_ms, model_tier, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                user_id,
                record.get("session_id"),
                record["agent_id"],
                record.get("input", ""),
                record.get("output", ""),
                int(record.get("tokens_used") or 0),
                float(record.get("cost_usd") or 0.0),
                float(record.get("duration_ms") or 0.0),
                record.get("model_tier"),
                _now(),
            ),
        )


def get_recent_agent_sessions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent first."""
    init_db()
    with connection() as conn:
        rows = conn.execute(
            sql(
                "SELECT id, user_id, session_id, agent_id, input, output, tokens_used, cost_usd, "
                "duration_ms, model_tier, created_at FROM agent_sessions WHERE user_id = ? "
                "ORDER BY id DESC LIMIT ?"
            ),
            (user_id, int(limit)),
        ).fetchall()
    return [
        {
            "id": r["id"],
            "user_id": r["user_id"],
            "session_id": r["session_id"],
            "agent_id": r["agent_id"],
            "input": r["input"],
            "output": r["output"],
            "tokens_used": r["tokens_used"],
            "cost_usd": r["cost_usd"],
            "duration_ms": r["duration_ms"],
            "model_tier": r["model_tier"],
            "created_at": r["created_at"],
        }
        for r in rows
    ]


# --- student profile and mastery ---------------------------------------------


def get_student_profile(user_id: str) -> Optional[StudentProfile]:
    """Return the stored profile or None. Do not raise on missing rows."""
    init_db()
    with connection() as conn:
        row = conn.execute(
            sql(
                "SELECT user_id, display_name, preferred_dialect, learning_style, grade_level, subjects "
                "FROM student_profiles WHERE user_id = ?"
            ),
            (user_id,),
        ).fetchone()
    if row is None:
        return None
    subjects: List[str] = []
    if row["subjects"]:
        try:
            subjects = list(json.loads(row["subjects"]))
        except (json.JSONDecodeError, TypeError):
            logger.warning("profile_subjects_unreadable user=%s", user_id)
    return StudentProfile(
        user_id=row["user_id"],
        display_name=row["display_name"],
        preferred_dialect=row["preferred_dialect"],
        learning_style=row["learning_style"],
        grade_level=row["grade_level"],
        subjects=tuple(subjects),
    )


def upsert_student_profile(profile: StudentProfile) -> None:
    init_db()
    params = (
        profile.user_id,
        profile.display_name,
        profile.preferred_dialect.value if profile.preferred_dialect else None,
        profile.learning_style.value if profile.learning_style else None,
        profile.grade_level,
        json.dumps(list(profile.subjects), ensure_ascii=False),
        _now(),
    )
    with connection() as conn:
        conn.execute(
            sql(
                "INSERT INTO student_profiles (user_id, display_name, preferred_dialect, learning_style, "
                "grade_level, subjects, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id) DO UPDATE SET display_name = excluded.display_name, "
                "preferred_dialect = excluded.preferred_dialect, learning_style = excluded.learning_style, "
                "grade_level = excluded.grade_level, subjects = excluded.subjects, "
                "updated_at = excluded.updated_at"
            ),
            params,
        )


def get_mastery_levels(user_id: str) -> Dict[str, float]:
    init_db()
    with connection() as conn:
        rows = conn.execute(
            sql("SELECT kc_id, mastery FROM student_mastery WHERE user_id = ?"),
            (user_id,),
        ).fetchall()
    return {r["kc_id"]: float(r["mastery"]) for r in rows}


def update_mastery(user_id: str, kc_id: str, mastery: float) -> None:
    if not 0.0 <= mastery <= 1.0:
        raise ValueError(f"mastery must be within [0, 1], got {mastery}")
    init_db()
    with connection() as conn:
        conn.execute(
            sql(
                "INSERT INTO student_mastery (user_id, kc_id, mastery, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (user_id, kc_id) DO UPDATE SET mastery = excluded.mastery, "
                "updated_at = excluded.updated_at"
            ),
            (user_id, kc_id, float(mastery), _now()),
        )


# --- agent memory --------------------------------------------------------------


def save_memory_entry(entry: MemoryEntry) -> None:
    """Append one entry and drop the pair's expired rows so the table stays bounded."""
    init_db()
    with connection() as conn:
        conn.execute(
            sql(
                "DELETE FROM agent_memories WHERE user_id = ? AND agent_id = ? "
                "AND expires_at IS NOT NULL AND expires_at <= ?"
            ),
            (entry.user_id, entry.agent_id, utcnow().isoformat()),
        )
        conn.execute(
            sql(
                "INSERT INTO agent_memories (user_id, agent_id, key, value, timestamp, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)"
            ),
            (
                entry.user_id,
                entry.agent_id,
                entry.key,
                json.dumps(entry.value, ensure_ascii=False, default=str),
                entry.timestamp.isoformat(),
                entry.expires_at.isoformat() if entry.expires_at else None,
            ),
        )


def load_memory_entries(user_id: str, agent_id: str) -> List[MemoryEntry]:
    """Oldest first; expired rows are skipped."""
    init_db()
    with connection() as conn:
        rows = conn.execute(
            sql(
                "SELECT user_id, agent_id, key, value, timestamp, expires_at FROM agent_memories "
                "WHERE user_id = ? AND agent_id = ? ORDER BY id"
            ),
            (user_id, agent_id),
        ).fetchall()
    entries: List[MemoryEntry] = []
    for r in rows:
        value = None
        if r["value"] is not None:
            try:
                value = json.loads(r["value"])
            except (json.JSONDecodeError, TypeError):
                value = r["value"]
        entry = MemoryEntry(
            user_id=r["user_id"],
            agent_id=r["agent_id"],
            key=r["key"],
            value=value,
            timestamp=datetime.fromisoformat(r["timestamp"]),
            expires_at=datetime.fromisoformat(r["expires_at"]) if r["expires_at"] else None,
        )
        if not entry.is_expired():
            entries.append(entry)
    return entries


def delete_memory_entries(user_id: str, agent_id: str) -> None:
    init_db()
    with connection() as conn:
        conn.execute(
            sql("DELETE FROM agent_memories WHERE user_id = ? AND agent_id = ?"),
            (user_id, agent_id),
        )
