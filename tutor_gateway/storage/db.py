"""
Connection handling for the tutoring store.

SQLite by default (DB_PATH); Postgres when DATABASE_URL is set. Callers use
`connection()` and write queries with '?' placeholders wrapped in `sql()`.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from tutor_gateway.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=3000",
)


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str

    @property
    def location(self) -> str:
        """Human-readable target for diagnostics; never exposes credentials."""
        return self.db_path if self.dialect == "sqlite" else "DATABASE_URL"


def get_db_info() -> DbInfo:
    settings = get_settings()
    if settings.database_url:
        return DbInfo(dialect="postgres", database_url=settings.database_url, db_path=settings.db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=settings.db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def _open(info: DbInfo) -> Any:
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections (pip install tutor-gateway[postgres])")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    Path(info.db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def connection() -> Iterator[Any]:
    """
    One connection per unit of work: committed on success, rolled back on
    error, always closed.
    """
    conn = _open(get_db_info())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def apply_schema(sqlite_ddl: Sequence[str], postgres_ddl: Sequence[str], shared_ddl: Sequence[str] = ()) -> None:
    """Run the dialect's CREATE statements, then the dialect-neutral ones (indexes)."""
    postgres = is_postgres()
    with connection() as conn:
        if not postgres:
            for pragma in SQLITE_PRAGMAS:
                conn.execute(pragma)
        for ddl in postgres_ddl if postgres else sqlite_ddl:
            conn.execute(ddl)
        for ddl in shared_ddl:
            conn.execute(ddl)


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query
