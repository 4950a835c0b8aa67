from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

_schema_ready: set[str] = set()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet), the log file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "devenv.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    if path not in _schema_ready:
        _create_schema(conn)
        _schema_ready.add(path)
    return conn


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          level TEXT NOT NULL,
          owner TEXT,
          resource_id TEXT,
          message TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
        CREATE INDEX IF NOT EXISTS idx_events_owner ON events(owner);
        """
    )


def init_db() -> None:
    """Create the diagnostic log table if it does not exist."""
    with connect() as conn:
        _create_schema(conn)


def _enabled(level: str) -> bool:
    threshold = LEVELS.get(settings.log_level.upper(), LEVELS["INFO"])
    return LEVELS.get(level, LEVELS["INFO"]) >= threshold


def log_event(level: str, message: str, owner: str | None = None, resource_id: str | None = None) -> None:
    level = level.upper()
    if not _enabled(level):
        return
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, owner, resource_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, owner, resource_id, message),
        )


def latest_events(limit: int = 100, owner: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if owner:
            rows = conn.execute(
                "SELECT * FROM events WHERE owner=? ORDER BY id DESC LIMIT ?", (owner, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
