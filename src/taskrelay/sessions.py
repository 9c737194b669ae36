"""Session Store: the durability boundary of the orchestration core.

Every write is an upsert keyed by work item id (sessions) or comment id
(processed-comment ledger), so concurrent workers need no extra locking.
Writes never raise into the caller by default: a failed write is logged as
a non-durable gap and reported through the return value, so an in-flight
job can still finish its external reporting.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TypeVar

from taskrelay.db import (
    SessionRow,
    complete_session,
    connect,
    filter_unprocessed_comment_ids,
    get_session,
    last_processed_comment_at,
    list_completed_sessions,
    list_sessions,
    mark_comments_processed,
    set_session_id,
    upsert_session,
)
from taskrelay.errors import DurabilityWriteFailure
from taskrelay.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

T = TypeVar("T")


class SessionStore:
    """Durable task->session mapping plus the processed-comment ledger."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, *, strict: bool = False):
        self.db_path = db_path
        self.strict = strict
        # Work items whose last write failed; surfaced for operators.
        self.degraded: set[str] = set()

    def _write(
        self, work_item_id: str, what: str, fn: Callable[[sqlite3.Connection], T]
    ) -> tuple[bool, T | None]:
        try:
            with connect(self.db_path) as conn:
                result = fn(conn)
        except sqlite3.Error as exc:
            self.degraded.add(work_item_id)
            log.error(
                "Session store %s failed for %s; task state is non-durable: %s",
                what,
                work_item_id,
                exc,
            )
            if self.strict:
                raise DurabilityWriteFailure(f"{what} failed for {work_item_id}: {exc}") from exc
            return False, None
        self.degraded.discard(work_item_id)
        return True, result

    def _read(self, what: str, fn: Callable[[sqlite3.Connection], T], default: T) -> T:
        try:
            with connect(self.db_path) as conn:
                return fn(conn)
        except sqlite3.Error as exc:
            log.error("Session store %s failed: %s", what, exc)
            return default

    # -- sessions --

    def start(
        self,
        work_item_id: str,
        *,
        identifier: str,
        title: str,
        started_at: str | None = None,
    ) -> bool:
        """Upsert the row for a run that is starting now."""
        ok, _ = self._write(
            work_item_id,
            "start",
            lambda conn: upsert_session(
                conn, work_item_id, identifier=identifier, title=title, started_at=started_at
            ),
        )
        return ok

    def capture_session(self, work_item_id: str, session_id: str) -> bool:
        """Persist the newest agent session id for a work item."""
        ok, updated = self._write(
            work_item_id,
            "session capture",
            lambda conn: set_session_id(conn, work_item_id, session_id),
        )
        if ok and not updated:
            log.warning("No session row for %s; session %s not recorded", work_item_id, session_id)
        return bool(ok and updated)

    def complete(
        self,
        work_item_id: str,
        success: bool,
        *,
        completed_at: str | None = None,
        detail: str | None = None,
    ) -> bool:
        ok, updated = self._write(
            work_item_id,
            "completion",
            lambda conn: complete_session(
                conn, work_item_id, success, completed_at=completed_at, detail=detail
            ),
        )
        return bool(ok and updated)

    def get(self, work_item_id: str) -> SessionRow | None:
        return self._read("lookup", lambda conn: get_session(conn, work_item_id), None)

    def session_id_for(self, work_item_id: str) -> str | None:
        row = self.get(work_item_id)
        return row["session_id"] if row and row["session_id"] else None

    def recent(self, limit: int = 50) -> list[SessionRow]:
        return self._read("list", lambda conn: list_sessions(conn, limit), [])

    def recently_completed(self, limit: int) -> list[SessionRow]:
        """Finished runs from every process, newest first."""
        return self._read(
            "completed list", lambda conn: list_completed_sessions(conn, limit), []
        )

    def last_feedback_at(self, work_item_id: str) -> str | None:
        """When a comment on this item was last consumed by a feedback run."""
        return self._read(
            "comment lookup", lambda conn: last_processed_comment_at(conn, work_item_id), None
        )

    # -- processed comments --

    def unprocessed(self, comment_ids: Sequence[str]) -> list[str]:
        """Filter to comment ids not yet in the ledger.

        A failed read returns an empty list, so the item waits for the next cycle.
        """
        return self._read(
            "comment lookup", lambda conn: filter_unprocessed_comment_ids(conn, comment_ids), []
        )

    def mark_comments_processed(self, comment_ids: Sequence[str], work_item_id: str) -> bool:
        """Record all comment ids in one transaction (all or nothing)."""
        if not comment_ids:
            return True
        ok, inserted = self._write(
            work_item_id,
            "comment marking",
            lambda conn: mark_comments_processed(conn, comment_ids, work_item_id),
        )
        if not ok:
            return False
        log.debug(
            "Marked %d comment(s) processed for %s (%d new)",
            len(comment_ids),
            work_item_id,
            inserted,
        )
        return True
