"""SQLite database for taskrelay durable state.

Holds the task -> session mapping, the processed-comment ledger, and the
settings table that overrides environment configuration.
"""

from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from taskrelay.paths import DEFAULT_DB_PATH


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Stamped on first open. 0 = fresh file.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS sessions (
    work_item_id TEXT PRIMARY KEY,
    session_id TEXT,
    identifier TEXT NOT NULL,
    title TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    success INTEGER,
    detail TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS processed_comments (
    comment_id TEXT PRIMARY KEY,
    work_item_id TEXT NOT NULL,
    processed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


# -- Row TypedDicts matching table schemas --


class SessionRow(TypedDict):
    work_item_id: str
    session_id: str | None
    identifier: str
    title: str
    started_at: str
    completed_at: str | None
    success: bool | None
    detail: str | None
    created_at: str
    updated_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_sessions_session_id ON sessions(session_id);
        CREATE INDEX IF NOT EXISTS idx_sessions_identifier ON sessions(identifier);
        CREATE INDEX IF NOT EXISTS idx_processed_comments_work_item
            ON processed_comments(work_item_id);
    """)


def _session_row(row: sqlite3.Row) -> SessionRow:
    data = dict(row)
    success = data.get("success")
    data["success"] = None if success is None else bool(success)
    return cast(SessionRow, data)


# -- sessions --


def upsert_session(
    conn: sqlite3.Connection,
    work_item_id: str,
    *,
    identifier: str,
    title: str,
    started_at: str | None = None,
    session_id: str | None = None,
) -> None:
    """Insert or restart the session row for a work item.

    A restart keeps the previous session_id unless a new one is given, and
    clears completion so the row reflects the new in-flight run.
    """
    now = _utcnow()
    conn.execute(
        "INSERT INTO sessions "
        "(work_item_id, session_id, identifier, title, started_at, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(work_item_id) DO UPDATE SET "
        "session_id = COALESCE(excluded.session_id, sessions.session_id), "
        "identifier = excluded.identifier, "
        "title = excluded.title, "
        "started_at = excluded.started_at, "
        "completed_at = NULL, "
        "success = NULL, "
        "detail = NULL, "
        "updated_at = excluded.updated_at",
        (work_item_id, session_id, identifier, title, started_at or now, now, now),
    )
    conn.commit()


def set_session_id(conn: sqlite3.Connection, work_item_id: str, session_id: str) -> bool:
    """Record the most recent agent session id. Returns False if no row exists."""
    cursor = conn.execute(
        "UPDATE sessions SET session_id = ?, updated_at = ? WHERE work_item_id = ?",
        (session_id, _utcnow(), work_item_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def complete_session(
    conn: sqlite3.Connection,
    work_item_id: str,
    success: bool,
    *,
    completed_at: str | None = None,
    detail: str | None = None,
) -> bool:
    """Stamp completion on a session row. Returns False if no row exists."""
    now = _utcnow()
    cursor = conn.execute(
        "UPDATE sessions SET completed_at = ?, success = ?, detail = ?, updated_at = ? "
        "WHERE work_item_id = ?",
        (completed_at or now, 1 if success else 0, detail, now, work_item_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def get_session(conn: sqlite3.Connection, work_item_id: str) -> SessionRow | None:
    """Lookup a session row by work item id."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE work_item_id = ?", (work_item_id,)
    ).fetchone()
    return _session_row(row) if row else None


def list_sessions(conn: sqlite3.Connection, limit: int = 50) -> list[SessionRow]:
    """List session rows, most recently updated first."""
    rows = conn.execute(
        "SELECT * FROM sessions ORDER BY updated_at DESC, work_item_id LIMIT ?", (limit,)
    ).fetchall()
    return [_session_row(row) for row in rows]


def list_completed_sessions(conn: sqlite3.Connection, limit: int = 50) -> list[SessionRow]:
    """Finished runs, most recently completed first."""
    rows = conn.execute(
        "SELECT * FROM sessions WHERE completed_at IS NOT NULL "
        "ORDER BY completed_at DESC, work_item_id LIMIT ?",
        (limit,),
    ).fetchall()
    return [_session_row(row) for row in rows]


# -- processed comments --


def filter_unprocessed_comment_ids(
    conn: sqlite3.Connection, comment_ids: Sequence[str]
) -> list[str]:
    """Return the given ids that are not yet in the ledger, preserving order."""
    if not comment_ids:
        return []
    placeholders = ",".join("?" for _ in comment_ids)
    rows = conn.execute(
        f"SELECT comment_id FROM processed_comments WHERE comment_id IN ({placeholders})",
        list(comment_ids),
    ).fetchall()
    seen = {row["comment_id"] for row in rows}
    return [cid for cid in comment_ids if cid not in seen]


def mark_comments_processed(
    conn: sqlite3.Connection, comment_ids: Sequence[str], work_item_id: str
) -> int:
    """Insert-if-absent every comment id in one transaction.

    Either all ids are recorded or none are. Returns the number of new rows.
    """
    now = _utcnow()
    inserted = 0
    with conn:
        for comment_id in comment_ids:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processed_comments "
                "(comment_id, work_item_id, processed_at) VALUES (?, ?, ?)",
                (comment_id, work_item_id, now),
            )
            inserted += cursor.rowcount
    return inserted


def last_processed_comment_at(conn: sqlite3.Connection, work_item_id: str) -> str | None:
    row = conn.execute(
        "SELECT MAX(processed_at) AS last FROM processed_comments WHERE work_item_id = ?",
        (work_item_id,),
    ).fetchone()
    return row["last"] if row else None


# -- settings --


def get_setting(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
        (key, value, _utcnow()),
    )
    conn.commit()


def delete_setting(conn: sqlite3.Connection, key: str) -> bool:
    cursor = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
    conn.commit()
    return cursor.rowcount > 0


def list_settings(conn: sqlite3.Connection) -> dict[str, str]:
    rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
    return {row["key"]: row["value"] for row in rows}
