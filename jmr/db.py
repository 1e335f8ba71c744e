from __future__ import annotations

import os
import secrets
import sqlite3
import sys
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class _Journal:
    path: str | None = None
    run_id: str = secrets.token_hex(4)


_journal = _Journal()


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str) -> None:
    """Enable the event journal at `path`, creating the table if needed.

    The journal lives inside the installation directory, so it is only
    enabled once that directory exists. Events logged before that point
    are printed but not recorded.
    """
    parent = os.path.dirname(path)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    with connect(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              run_id TEXT NOT NULL,
              level TEXT NOT NULL,
              step TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )
    _journal.path = path


def close_db() -> None:
    _journal.path = None


def new_run() -> str:
    _journal.run_id = secrets.token_hex(4)
    return _journal.run_id


def log_event(level: str, message: str, step: str | None = None) -> None:
    level = level.upper()
    stream = sys.stdout if level == "INFO" else sys.stderr
    print(f"{level}: {message}", file=stream, flush=True)

    path = _journal.path
    # The install dir may have been removed under us (--remove).
    if not path or not os.path.isdir(os.path.dirname(path)):
        return
    with connect(path) as conn:
        conn.execute(
            "INSERT INTO events (ts, run_id, level, step, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), _journal.run_id, level, step, message),
        )


def latest_events(path: str, limit: int = 20) -> list[dict[str, Any]]:
    if not os.path.exists(path):
        return []
    with connect(path) as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
