"""
Database helpers for SQLite (local) and Postgres (Supabase).
"""

from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Tuple, Type

from orchestrator.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DATABASE_URL")


def get_db_info() -> DbInfo:
    database_url = _database_url()
    db_path = get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def integrity_errors() -> Tuple[Type[BaseException], ...]:
    """Exception types raised on unique/primary-key violations for any dialect."""
    if psycopg is not None:
        return (sqlite3.IntegrityError, psycopg.IntegrityError)
    return (sqlite3.IntegrityError,)


def ensure_sqlite_dir() -> None:
    if is_postgres():
        return
    Path(get_settings().db_path).parent.mkdir(parents=True, exist_ok=True)


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    conn = sqlite3.connect(info.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def configure_sqlite(conn: Any) -> None:
    if is_postgres():
        return
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=3000")


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def from_json(raw: Any, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


def to_ts(value: datetime) -> str:
    # Fixed-width UTC so stored timestamps compare correctly as text.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))
