"""Wiring: build the collaborators for the current process from settings."""

from __future__ import annotations

from pathlib import Path

from taskrelay.agent import ClaudeCodeAgent, ExecutionAgent
from taskrelay.config import Settings
from taskrelay.monitor import TaskMonitor
from taskrelay.processor import JobProcessor
from taskrelay.sessions import SessionStore
from taskrelay.tracker import LinearTracker, ProjectTracker


def get_settings(db_path: Path | None = None) -> Settings:
    return Settings(db_path)


def get_store(settings: Settings) -> SessionStore:
    return SessionStore(settings.db_path)


def get_tracker(settings: Settings) -> ProjectTracker:
    return LinearTracker(settings)


def get_agent(settings: Settings) -> ExecutionAgent:
    return ClaudeCodeAgent(
        command=settings.resolve("agent_command") or "claude",
        model=settings.resolve("agent_model"),
        cwd=settings.resolve("workspace_path"),
    )


def get_monitor(
    settings: Settings,
    store: SessionStore | None = None,
    tracker: ProjectTracker | None = None,
) -> TaskMonitor:
    return TaskMonitor(store or get_store(settings), settings, tracker)


_process_monitor: TaskMonitor | None = None


def process_monitor(settings: Settings) -> TaskMonitor:
    """The monitor owned by this process, created on first use."""
    global _process_monitor
    if _process_monitor is None:
        _process_monitor = get_monitor(settings, tracker=get_tracker(settings))
    return _process_monitor


def build_processor(settings: Settings | None = None) -> JobProcessor:
    """Processor for one job. Settings values are resolved on every access."""
    settings = settings or get_settings()
    monitor = process_monitor(settings)
    assert monitor.tracker is not None
    return JobProcessor(monitor.tracker, get_agent(settings), monitor, monitor.store, settings)
