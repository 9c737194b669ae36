"""Shared test fixtures: template DB, in-process tracker and agent fakes."""

import os
import shutil
import tempfile
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from taskrelay.agent import EVENT_RESULT, EVENT_SESSION_ID, EVENT_TEXT, EVENT_TOOL_CALL, AgentEvent
from taskrelay.config import Settings
from taskrelay.db import get_connection
from taskrelay.errors import AgentFailure
from taskrelay.models import Comment, WorkItem
from taskrelay.monitor import TaskMonitor
from taskrelay.sessions import SessionStore
from taskrelay.tracker import system_note

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Settings must not pick up the developer's TASKRELAY_* environment."""
    for key in list(os.environ):
        if key.startswith("TASKRELAY_") and key not in ("TASKRELAY_REDIS_URL",):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is cheaper than running migrations in every test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    path = Path(path_str)
    try:
        get_connection(path).close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_path(tmp_path: Path, _db_template_path: Path) -> Path:
    path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, path)
    return path


@pytest.fixture()
def db_conn(db_path: Path):
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(db_path)


@pytest.fixture()
def store(db_path: Path) -> SessionStore:
    return SessionStore(db_path)


# -- tracker fake --


class FakeTracker:
    """In-memory ProjectTracker. ``claim`` is an atomic compare-then-set."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.items: dict[str, WorkItem] = {}
        self.comments: dict[str, list[Comment]] = {}
        self.notes: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()
        self._clock = T0

    def add_item(self, item_id, title, *, identifier=None, description=None, status=None):
        item = WorkItem(
            id=item_id,
            identifier=identifier or item_id,
            title=title,
            description=description,
            status=status or self.settings.status_ready,
        )
        self.items[item_id] = item
        return item

    def add_comment(self, item_id, body, *, comment_id=None):
        self._clock += timedelta(minutes=1)
        comments = self.comments.setdefault(item_id, [])
        comment = Comment(
            id=comment_id or f"c-{item_id}-{len(comments) + 1}", body=body, created_at=self._clock
        )
        comments.append(comment)
        return comment

    def status(self, item_id):
        return self.items[item_id].status

    def notes_for(self, item_id):
        return [text for iid, text in self.notes if iid == item_id]

    def list_items_by_status(self, status):
        return [
            WorkItem(**item.to_dict()) for item in self.items.values() if item.status == status
        ]

    def get_item(self, item_id):
        item = self.items.get(item_id)
        return WorkItem(**item.to_dict()) if item else None

    def claim(self, item_id):
        with self._lock:
            item = self.items.get(item_id)
            if item is None or item.status != self.settings.status_ready:
                return False
            item.status = self.settings.status_claimed
        self.calls.append(("status", item_id, self.settings.status_claimed))
        return True

    def set_status(self, item_id, status):
        if item_id not in self.items:
            return False
        self.items[item_id].status = status
        self.calls.append(("status", item_id, status))
        return True

    def add_note(self, item_id, text):
        body = system_note(text)
        self.notes.append((item_id, body))
        self.calls.append(("note", item_id, body))
        self.add_comment(item_id, body)
        return True

    def list_comments(self, item_id):
        return sorted(self.comments.get(item_id, []), key=lambda c: c.created_at)

    def count_by_status(self, statuses):
        return {s: len(self.list_items_by_status(s)) for s in statuses}


@pytest.fixture()
def tracker(settings) -> FakeTracker:
    return FakeTracker(settings)


# -- agent fake --


def agent_script(
    *, session_id="sess-1", text="All done.", tools=(), is_error=False, result=True
) -> list[AgentEvent]:
    """Events for one scripted agent run."""
    events = [AgentEvent(EVENT_SESSION_ID, session_id=session_id)] if session_id else []
    events += [AgentEvent(EVENT_TOOL_CALL, tool=name) for name in tools]
    if text:
        events.append(AgentEvent(EVENT_TEXT, text=text))
    if result:
        events.append(AgentEvent(EVENT_RESULT, text=text, is_error=is_error))
    return events


class FakeAgent:
    """Replays scripted runs in order. A run may be an exception to raise."""

    def __init__(self, *runs):
        self.runs = list(runs)
        self.calls: list[dict] = []

    async def run(self, prompt, *, resume_session_id=None, system_prompt=None):
        self.calls.append({"prompt": prompt, "resume_session_id": resume_session_id})
        script = self.runs.pop(0) if self.runs else agent_script()
        if isinstance(script, Exception):
            raise script
        for event in script:
            yield event


@pytest.fixture()
def agent() -> FakeAgent:
    return FakeAgent()


def failing_agent(message="agent crashed") -> FakeAgent:
    return FakeAgent(AgentFailure(message), AgentFailure(message), AgentFailure(message))


# -- monitor with the Redis edges patched out --


class EventLog(list):
    def types(self, task_id=None):
        return [e["type"] for e in self if task_id is None or e["task_id"] == task_id]

    def of(self, event_type):
        return [e for e in self if e["type"] == event_type]


@pytest.fixture()
def events():
    """Capture publish_event calls made by the monitor and jobs modules."""
    captured = EventLog()

    def _publish(event_type, task_id, *, extra=None):
        captured.append({"type": event_type, "task_id": task_id, **(extra or {})})

    with (
        patch("taskrelay.monitor.publish_event", side_effect=_publish),
        patch("taskrelay.jobs.publish_event", side_effect=_publish),
        patch("taskrelay.monitor.update_current_job_meta"),
        patch(
            "taskrelay.monitor.get_queue_counts_safe",
            return_value={"ok": True, "queued": 0, "scheduled": 0, "running": 0, "failed": 0},
        ),
        patch("taskrelay.monitor.list_running_jobs", return_value=[]),
        patch("taskrelay.monitor.is_paused", return_value=False),
    ):
        yield captured


@pytest.fixture()
def monitor(store, settings, tracker, events) -> TaskMonitor:
    return TaskMonitor(store, settings, tracker)

