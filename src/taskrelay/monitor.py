"""Task monitor: owner of live task state and the dashboard event feed.

One ``TaskMonitor`` lives in each process. Inside an rq worker it tracks the
task that worker owns; every state change is persisted to the Session Store,
mirrored into the running job's meta, and broadcast on the Redis event
stream, so dashboards in other processes see the same picture.

Unknown task ids are no-ops and transport errors are logged, never raised
into the job that called them.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import UTC, datetime
from typing import Any

from redis.exceptions import RedisError

from taskrelay.config import Settings
from taskrelay.errors import RetryRejected, TaskRelayError
from taskrelay.models import (
    KIND_RETRY,
    CompletedTaskInfo,
    RunningTaskInfo,
    StepRecord,
    make_payload,
)
from taskrelay.queue import (
    EVENT_COMPLETED,
    EVENT_LOG,
    EVENT_PAUSED,
    EVENT_PROGRESS,
    EVENT_RESUMED,
    EVENT_SESSION_CAPTURED,
    EVENT_STARTED,
    EVENT_STATS_REFRESHED,
    JobOptions,
    enqueue_job,
    get_queue_counts_safe,
    is_paused,
    list_queued_jobs,
    list_running_jobs,
    pause_execution,
    publish_event,
    resume_execution,
    update_current_job_meta,
)
from taskrelay.sessions import SessionStore
from taskrelay.tracker import ProjectTracker

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class TaskMonitor:
    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        tracker: ProjectTracker | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tracker = tracker
        self._running: dict[str, RunningTaskInfo] = {}
        self._completed: OrderedDict[str, CompletedTaskInfo] = OrderedDict()
        # Guards insert/remove on the two maps. Entry fields are only touched
        # by the worker that owns the task id.
        self._lock = threading.Lock()

    # -- events --

    def _log_event(self, message: str, *, level: str = "info", task_id: str | None = None) -> None:
        publish_event(EVENT_LOG, task_id, extra={"level": level, "message": message})

    # -- lifecycle --

    def start(
        self, task_id: str, identifier: str, title: str, *, label: str | None = None
    ) -> RunningTaskInfo:
        """Register a running task, upsert its session row, emit ``started``.

        *label* prefixes the displayed title ("[feedback] ..."); the stored
        session row keeps the plain title.
        """
        shown = f"[{label}] {title}" if label else title
        info = RunningTaskInfo(
            task_id=task_id, identifier=identifier, title=shown, started_at=_now()
        )
        with self._lock:
            self._running[task_id] = info
            self._completed.pop(task_id, None)
        self.store.start(
            task_id, identifier=identifier, title=title, started_at=info.started_at.isoformat()
        )
        update_current_job_meta(progress=0, current_step=None, session_id=None)
        publish_event(
            EVENT_STARTED,
            task_id,
            extra={"identifier": identifier, "title": shown, "started_at": info.started_at},
        )
        self._log_event(f"🚀 [{identifier}] Starting task: {shown}", task_id=task_id)
        log.info("Task %s started: %s", identifier, shown)
        return info

    def progress(self, task_id: str, step: str, pct: int) -> None:
        info = self._running.get(task_id)
        if info is None:
            return
        now = _now()
        info.progress = pct
        info.current_step = step
        info.step_history.append(StepRecord(step=step, progress=pct, at=now))
        update_current_job_meta(progress=pct, current_step=step)
        publish_event(
            EVENT_PROGRESS,
            task_id,
            extra={
                "identifier": info.identifier,
                "progress": pct,
                "current_step": step,
                "duration_seconds": (now - info.started_at).total_seconds(),
            },
        )
        self._log_event(f"[{info.identifier}] {step}", task_id=task_id)

    def capture_session(self, task_id: str, session_id: str) -> None:
        """Record the agent session id and persist it at once."""
        info = self._running.get(task_id)
        if info is None:
            log.debug("Session %s for unknown task %s ignored", session_id, task_id)
            return
        info.session_id = session_id
        self.store.capture_session(task_id, session_id)
        update_current_job_meta(session_id=session_id)
        publish_event(
            EVENT_SESSION_CAPTURED,
            task_id,
            extra={"identifier": info.identifier, "session_id": session_id},
        )
        self._log_event(f"[{info.identifier}] Session ID: {session_id}", task_id=task_id)

    def complete(self, task_id: str, success: bool, detail: str | None = None) -> None:
        """Move a task to the completed cache, persist, emit, refresh stats."""
        with self._lock:
            info = self._running.pop(task_id, None)
            if info is None:
                return
            done = CompletedTaskInfo(
                task_id=task_id,
                identifier=info.identifier,
                title=info.title,
                started_at=info.started_at,
                completed_at=_now(),
                success=success,
                session_id=info.session_id,
                detail=detail,
            )
            self._completed[task_id] = done
            self._completed.move_to_end(task_id)
            limit = self.settings.completed_cache_size
            while len(self._completed) > limit:
                self._completed.popitem(last=False)

        self.store.complete(
            task_id, success, completed_at=done.completed_at.isoformat(), detail=detail
        )
        duration = (done.completed_at - done.started_at).total_seconds()
        publish_event(
            EVENT_COMPLETED,
            task_id,
            extra={
                "identifier": info.identifier,
                "success": success,
                "progress": 100,
                "duration_seconds": duration,
                "session_id": info.session_id,
                "detail": detail,
            },
        )
        if success:
            self._log_event(
                f"🎉 [{info.identifier}] Task completed (duration: {round(duration)}s)",
                task_id=task_id,
            )
        else:
            self._log_event(
                f"❌ [{info.identifier}] Task failed: {detail}", level="error", task_id=task_id
            )
        self.refresh_stats()

    # -- stats --

    def tracker_counts(self) -> dict[str, int] | None:
        if self.tracker is None:
            return None
        s = self.settings
        try:
            counts = self.tracker.count_by_status(s.tracked_statuses())
        except TaskRelayError as exc:
            log.warning("Tracker counts unavailable: %s", exc)
            return None
        return {
            "todo": counts.get(s.status_ready, 0),
            "in_progress": counts.get(s.status_claimed, 0),
            "in_review": counts.get(s.status_in_review, 0),
            "done": counts.get(s.status_done, 0),
            "failed": counts.get(s.status_failed, 0),
        }

    def refresh_stats(self) -> dict[str, Any] | None:
        """Recompute aggregate counts and broadcast ``statsRefreshed``."""
        counts = self.tracker_counts()
        if counts is None:
            return None
        queue = get_queue_counts_safe()
        stats = {**counts, "queue_length": queue.get("queued")}
        publish_event(EVENT_STATS_REFRESHED, None, extra={"stats": stats})
        return stats

    # -- reads --

    def running(self) -> list[RunningTaskInfo]:
        with self._lock:
            return list(self._running.values())

    def completed(self) -> list[CompletedTaskInfo]:
        """Recently finished tasks, newest first.

        Jobs finish inside rq work-horses, so the local cache only holds what
        this process ran; the rest comes from the Session Store.
        """
        limit = self.settings.completed_cache_size
        with self._lock:
            merged = {info.task_id: info for info in self._completed.values()}
            running = set(self._running)
        for row in self.store.recently_completed(limit):
            if row["work_item_id"] not in merged and row["work_item_id"] not in running:
                merged[row["work_item_id"]] = CompletedTaskInfo.from_row(row)
        ordered = sorted(merged.values(), key=lambda info: info.completed_at, reverse=True)
        return ordered[:limit]

    def _remote_running(self) -> list[dict[str, Any]]:
        try:
            return list_running_jobs()
        except RedisError as exc:
            log.debug("Running jobs unavailable: %s", exc)
            return []

    def dashboard_snapshot(self) -> dict[str, Any]:
        """Queue depth, tracker counts and running tasks. Never mutates."""
        now = _now()
        running = [info.to_dict(now) for info in self.running()]
        seen = {row["task_id"] for row in running}
        for row in self._remote_running():
            if row.get("task_id") not in seen:
                running.append(row)
        return {
            "queue": get_queue_counts_safe(),
            "tracker": self.tracker_counts(),
            "running": running,
            "completed": [info.to_dict() for info in self.completed()],
            **self.execution_status(),
        }

    def task_detail(self, task_id: str) -> dict[str, Any] | None:
        detail = self._task_state(task_id)
        if detail is not None:
            detail["last_feedback_at"] = self.store.last_feedback_at(task_id)
        return detail

    def _task_state(self, task_id: str) -> dict[str, Any] | None:
        info = self._running.get(task_id)
        if info is not None:
            return info.to_dict(_now())
        done = self._completed.get(task_id)
        if done is not None:
            return done.to_dict()
        row = self.store.get(task_id)
        if row is None:
            return None
        if row["completed_at"]:
            return CompletedTaskInfo.from_row(row).to_dict()
        return {
            "task_id": row["work_item_id"],
            "identifier": row["identifier"],
            "title": row["title"],
            "session_id": row["session_id"],
            "started_at": row["started_at"],
            "completed_at": None,
            "success": None,
            "status": "unknown",
        }

    def session_id_for(self, task_id: str) -> str | None:
        info = self._running.get(task_id)
        if info is not None and info.session_id:
            return info.session_id
        return self.store.session_id_for(task_id)

    def list_queued(self) -> list[dict[str, Any]]:
        try:
            return list_queued_jobs()
        except RedisError as exc:
            log.warning("Queue unavailable: %s", exc)
            return []

    # -- commands --

    def pause(self) -> bool:
        pause_execution()
        publish_event(EVENT_PAUSED, None)
        self._log_event("⏸ Execution paused", level="warn")
        log.info("Execution paused")
        return True

    def resume(self) -> bool:
        resume_execution()
        publish_event(EVENT_RESUMED, None)
        self._log_event("▶ Execution resumed")
        log.info("Execution resumed")
        return True

    def execution_status(self) -> dict[str, bool]:
        return {"paused": is_paused()}

    def retry(self, task_id: str) -> str:
        """Re-enter a failed item at ``claimed`` using its stored session.

        Returns the enqueued job id. Raises :class:`RetryRejected` when the
        item is unknown, not in the failed status, or has no session.
        """
        if self.tracker is None:
            raise RetryRejected("No tracker configured")
        item = self.tracker.get_item(task_id)
        if item is None:
            raise RetryRejected(f"Task with ID {task_id} not found")
        failed = self.settings.status_failed
        if item.status != failed:
            raise RetryRejected(
                f"Only failed tasks can be retried. Current status: {item.status or 'unknown'}"
            )
        session_id = self.session_id_for(task_id)
        if not session_id:
            raise RetryRejected(
                f"No session found for task {task_id}. "
                "Cannot retry without previous execution context."
            )

        self.tracker.set_status(task_id, self.settings.status_claimed)
        self.tracker.add_note(
            task_id,
            "🔄 **Manual task retry**\n\n"
            f"Using previous execution context (Session ID: {session_id})\n"
            "System will review the previous failure and retry...",
        )
        job = enqueue_job(
            KIND_RETRY,
            make_payload(item, resume_session_id=session_id),
            JobOptions.from_settings(self.settings),
        )
        self._log_event(f"🔄 [{item.identifier}] Task added to retry queue", task_id=task_id)
        self.refresh_stats()
        return job.id
